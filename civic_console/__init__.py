"""Admin and supervisor console for municipal issue reports."""

__version__ = "0.1.0"
