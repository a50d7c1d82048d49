"""Database-persisted HTTP sessions."""

__version__ = "1.0.0"
