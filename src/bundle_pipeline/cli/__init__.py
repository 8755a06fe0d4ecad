"""Command-line interface for bundle-pipeline.

Example:
    $ bundle-pipeline run --commit 3f2a9c1d --event merge
"""

from __future__ import annotations

from bundle_pipeline.cli.main import cli, main

__all__ = ["cli", "main"]
