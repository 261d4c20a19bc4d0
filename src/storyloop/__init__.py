"""storyloop: autonomous work-item completion loops driven by a coding agent."""

__version__ = "0.1.0"
