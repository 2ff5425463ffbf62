"""
errors.py
Structural errors raised by the GeoTox pipeline.

Failures that only affect one unit of work (a Hill fit, one individual's
root-finding, a single sensitivity factor) are not raised; they are recorded
as flags or NaN values in the result tables instead.
"""


class GeoToxError(Exception):
    """Base class for pipeline errors."""


class DimensionMismatchError(GeoToxError, ValueError):
    """Paired matrices disagree on individual or chemical counts."""


class MissingDataError(GeoToxError, KeyError):
    """Required upstream data is absent (region, chemical or pipeline stage)."""

    def __str__(self):
        # KeyError repr()s its message; keep it readable
        return str(self.args[0]) if self.args else ""
