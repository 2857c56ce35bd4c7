"""Lamp: shared task board with bulk sync, audit trail, and live fan-out."""

__version__ = "0.4.0"
