#!/usr/bin/env python3
"""
Exception types raised by the CASA pipeline.

Contract violations (bad frame order, malformed detector output, invalid
configuration) fail fast. Degenerate numeric inputs are not errors.
"""


class CasaError(Exception):
    """Base class for all pipeline errors."""


class FrameOrderError(CasaError, ValueError):
    """Frames were handed to the tracker out of order or after it finished."""


class DetectorOutputError(CasaError, ValueError):
    """Raw detector output does not have the expected row layout."""


class ConfigError(CasaError, ValueError):
    """A configuration value is missing or out of range."""


class TrackStateError(CasaError, RuntimeError):
    """An operation is not allowed in the track's current lifecycle state."""


class AnalysisError(CasaError, RuntimeError):
    """The whole run failed; no population metrics are produced."""
