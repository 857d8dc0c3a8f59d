"""
Exception taxonomy for the retrieval engine.

Only connection-time unavailability is allowed to abort startup. Everything
else is either recovered from (vector index fallback), reported as data
(partial batch failures, misses) or logged (cache and analytics writes).
"""

from __future__ import annotations


class CampusKBError(Exception):
    """Base class for engine errors."""


class StoreUnavailable(CampusKBError):
    """The document store could not be reached after the allowed attempts."""


class EmbeddingUnavailable(CampusKBError):
    """The embedding model is not initialized or failed to produce a vector."""


class VectorIndexUnavailable(CampusKBError):
    """The managed ANN index cannot serve a query.

    Raised by the indexed search path so that callers can substitute the
    exact search path.
    """
