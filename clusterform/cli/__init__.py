"""Command-line interface for clusterform."""

from .main import cli, main

__all__ = ["cli", "main"]
