from __future__ import annotations

__all__ = [
    "CaloRecoError",
    "CollectionUnavailableError",
    "NotComputableError",
    "AssociationError",
    "ConfigurationError",
]


class CaloRecoError(Exception):
    """Base class for all errors raised by :mod:`calo_reco`."""


class CollectionUnavailableError(CaloRecoError, LookupError):
    r"""
    The current track or cluster list cannot be retrieved from the event store.

    Fatal for an association pass; raised before any candidate is generated.
    """


class NotComputableError(CaloRecoError, ValueError):
    r"""
    A compatibility predicate cannot produce a value for a track/cluster pair
    (degenerate geometry, no hits in the search window, missing helix, ...).

    Always treated as a negative cut outcome by the candidate generator.
    """


class AssociationError(CaloRecoError, RuntimeError):
    r"""
    A track-cluster association could not be committed to the event store.

    Aborts the remainder of the resolution pass.
    """


class ConfigurationError(CaloRecoError, ValueError):
    """Invalid or unparsable settings."""
