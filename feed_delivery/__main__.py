"""Main entry point for the feed delivery package."""

from feed_delivery.cli import cli

if __name__ == "__main__":
    cli()
