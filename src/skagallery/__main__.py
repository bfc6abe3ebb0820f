"""CLI entrypoint for running skagallery as a module."""

from skagallery.cli import cli
from skagallery.logging import setup_logging

if __name__ == "__main__":
    setup_logging()
    cli()
