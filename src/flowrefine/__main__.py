"""Main entry point for running flowrefine as a module.

Usage:
    python -m flowrefine --help
    python -m flowrefine refine workflow.json "add a review step"
    python -m flowrefine serve --mock
"""

from __future__ import annotations

from .cli import app

if __name__ == "__main__":
    app()
