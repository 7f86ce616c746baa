"""
CLI layer for deploy-spine.

Provides a Typer application whose commands load the deployment
document and settings, then delegate to the driver. This package
handles only terminal transport: argument parsing, coloured output,
signal handling and exit codes.

Entry point::

    deploy-spine --help
"""

from deployspine.cli.app import app

__all__ = ["app"]
