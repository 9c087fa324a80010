"""Detector module - whale position alerts."""

from perp_positioning.detector.models import WhaleAlert, WhaleAlertType
from perp_positioning.detector.whale import DEFAULT_NOTIONAL_THRESHOLD, WhaleAlertDetector

__all__ = [
    "DEFAULT_NOTIONAL_THRESHOLD",
    "WhaleAlert",
    "WhaleAlertDetector",
    "WhaleAlertType",
]
