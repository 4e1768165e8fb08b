"""trackdown - file-based hierarchical ticket tracking."""

__version__ = "0.4.0"
