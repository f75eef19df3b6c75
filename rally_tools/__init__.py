"""Rally tools: supply chain calculation and cross-environment sync."""

__version__ = "0.4.0"
