"""Detect an attached Arduino, compile a sketch for it, upload it and record its serial output."""

__version__ = "0.1.0"
