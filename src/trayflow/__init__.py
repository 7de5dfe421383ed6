"""Growth-stage lifecycle engine for microgreens trays."""

__version__ = "0.1.0"
