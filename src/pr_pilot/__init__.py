"""pr-pilot: delegate coding tasks to AI backends and drive them to a shipped PR."""

__version__ = "0.4.0"
