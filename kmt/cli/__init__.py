"""Command line front-end (``kmt`` console script)."""

from kmt.cli.main import cli, create_parser, main

__all__ = ["cli", "create_parser", "main"]
