"""LoopShip: run a coding agent story by story until a PRD is done."""

__version__ = "0.2.0"
