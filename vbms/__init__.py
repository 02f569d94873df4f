"""vbms - very basic monitoring service."""

__version__ = "0.2.0"
