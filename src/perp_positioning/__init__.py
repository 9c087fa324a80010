"""Perp Positioning - trader positioning analytics for perpetuals venues."""

__version__ = "0.1.0"
