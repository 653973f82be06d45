"""Build queue and live preview servers for uploaded web projects."""

__version__ = "1.0.0"
