import asyncio

import pytest


class FakeClock:
    """Settable wall clock in whole epoch seconds."""

    def __init__(self, now: int = 1_700_000_000):
        self.current = now

    def now(self) -> int:
        return self.current

    def now_ms(self) -> int:
        return self.current * 1000

    def advance(self, seconds: int) -> int:
        self.current += seconds
        return self.current


def run(coro):
    """Run an async function in a fresh event loop."""
    loop = asyncio.new_event_loop()
    try:
        return loop.run_until_complete(coro)
    finally:
        loop.close()


@pytest.fixture
def clock():
    return FakeClock()
