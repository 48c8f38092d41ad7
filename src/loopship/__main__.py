"""Main entry point for running LoopShip as a module.

Usage:
    python -m loopship --help
    python -m loopship run --agent codex --verbose
    python -m loopship status
"""

from __future__ import annotations

from .cli import app

if __name__ == "__main__":
    app()
