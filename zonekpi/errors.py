"""Error taxonomy for KPI queries.

An empty result is never an error: every query returns a (possibly empty)
list. These exceptions are the only failure outcomes a caller sees.
"""

from __future__ import annotations


class KpiError(Exception):
    """Base class for query failures."""


class StoreUnavailable(KpiError):
    """The event store could not be reached, or no session was free in time.

    Surfaced to the caller unmodified; retrying is the caller's policy.
    """


class InvalidParameter(KpiError, ValueError):
    """Client input rejected before any store access."""


class QueryCancelled(KpiError):
    """The caller cancelled the query; no partial result is returned."""
