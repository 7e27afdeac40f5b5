"""Career guidance conversation API."""

__version__ = "0.3.0"
