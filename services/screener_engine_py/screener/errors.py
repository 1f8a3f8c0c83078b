"""
Exception types raised by the screener.

Scan-level problems (bad parameters, an unobtainable credential) propagate
to the caller.  Everything else is raised inside a single symbol's unit of
work and contained by the scanner.
"""
from __future__ import annotations


class ScreenerError(Exception):
    """Base class for all screener errors."""


class ValidationError(ScreenerError, ValueError):
    """Malformed parameters (non-positive width, missing period, ...)."""


class DataIntegrityError(ValidationError):
    """A price series is missing an array or its arrays disagree in length."""


class TransientUpstreamError(ScreenerError):
    """Network or HTTP failure while talking to an upstream endpoint."""


class CredentialError(TransientUpstreamError):
    """The session credential could not be acquired within the retry budget."""


class InsufficientHistoryError(ScreenerError):
    """A series is shorter than an indicator needs."""
