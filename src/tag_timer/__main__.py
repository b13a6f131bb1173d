from tag_timer.cli import cli

# Entry point for `python -m tag_timer`
if __name__ == "__main__":
    cli()
