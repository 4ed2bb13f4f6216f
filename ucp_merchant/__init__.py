"""UCP merchant commerce transaction engine."""

__version__ = "0.1.0"
