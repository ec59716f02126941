from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional

from calo_reco.association import (
    AssociationCandidate,
    AssociationLedger,
    CandidateGenerator,
    GreedyResolver,
)
from calo_reco.config import TrackRecoveryHelixConfig
from calo_reco.errors import ConfigurationError
from calo_reco.geometry import DetectorGeometry
from calo_reco.helpers import CompatibilityPredicates
from calo_reco.managers import EventStore

logger = logging.getLogger(__name__)

__all__ = ["RecoveryResult", "TrackRecoveryHelixAlgorithm"]


@dataclass(slots=True)
class RecoveryResult:
    """Summary of one recovery pass over an event."""
    event_id: int
    n_tracks: int
    n_clusters: int
    n_eligible_tracks: int
    n_eligible_clusters: int
    n_candidates: int
    n_candidate_tracks: int
    candidates: List[AssociationCandidate] = field(default_factory=list)
    commits: List[AssociationCandidate] = field(default_factory=list)
    rejections: Dict[str, int] = field(default_factory=dict)

    @property
    def n_commits(self) -> int:
        return len(self.commits)

    def ledger(self) -> AssociationLedger:
        """Rebuild the pre-resolution ledger from the recorded candidates."""
        return AssociationLedger.from_candidates(self.candidates)


class TrackRecoveryHelixAlgorithm:
    r"""
    Recover track-cluster associations missed by earlier reconstruction.

    One call to :meth:`run` performs a complete pass over an event:

    1. read the current track and cluster lists of the event store,
    2. build the candidate ledger (:class:`~calo_reco.association.CandidateGenerator`),
    3. drain it with the global greedy resolver, committing each choice through
       :meth:`EventStore.add_track_cluster_association`.

    A track list or cluster list that cannot be retrieved raises
    :class:`~calo_reco.errors.CollectionUnavailableError` before any work; a
    failed commit raises :class:`~calo_reco.errors.AssociationError` and ends
    the pass, with earlier commits left in place.

    Parameters
    ----------
    config : TrackRecoveryHelixConfig, optional
        Cut values.
    predicates : CompatibilityPredicates, optional
        Distance/consistency backend.

    Examples
    --------
    >>> algo = TrackRecoveryHelixAlgorithm()
    >>> result = algo.run(store)          # doctest: +SKIP
    >>> result.n_commits                  # doctest: +SKIP
    3
    """

    __slots__ = ("config", "predicates")

    def __init__(self, config: Optional[TrackRecoveryHelixConfig] = None,
                 predicates: Optional[CompatibilityPredicates] = None) -> None:
        self.config = config or TrackRecoveryHelixConfig()
        self.predicates = predicates or CompatibilityPredicates()

    @classmethod
    def from_settings(cls, settings: Optional[Mapping[str, Any]] = None) -> "TrackRecoveryHelixAlgorithm":
        r"""
        Build the algorithm from a parsed configuration file.

        Uses the ``"track_recovery_helix"``, ``"geometry"`` and ``"predicates"``
        blocks; missing blocks keep defaults.
        """
        settings = dict(settings or {})
        config = TrackRecoveryHelixConfig.from_mapping(settings.get("track_recovery_helix"))
        geometry = DetectorGeometry.from_mapping(settings.get("geometry"))
        pred_cfg = dict(settings.get("predicates") or {})
        unknown = sorted(set(pred_cfg) - {"hadronic_energy_resolution", "n_sampling_points"})
        if unknown:
            raise ConfigurationError(f"Unknown predicate settings: {', '.join(unknown)}")
        predicates = CompatibilityPredicates(geometry=geometry, **pred_cfg)
        return cls(config, predicates)

    def run(self, store: EventStore) -> RecoveryResult:
        tracks = store.get_current_track_list()
        clusters = store.get_current_cluster_list()

        generator = CandidateGenerator(self.config, self.predicates)
        ledger = generator.generate(tracks, clusters)
        candidates = list(ledger.iter_candidates())
        n_candidate_tracks = len(ledger)

        resolver = GreedyResolver()
        resolver.resolve(ledger, store.add_track_cluster_association)

        result = RecoveryResult(
            event_id=store.event_id,
            n_tracks=len(tracks),
            n_clusters=len(clusters),
            n_eligible_tracks=generator.n_eligible_tracks,
            n_eligible_clusters=generator.n_eligible_clusters,
            n_candidates=len(candidates),
            n_candidate_tracks=n_candidate_tracks,
            candidates=candidates,
            commits=list(resolver.commits),
            rejections=dict(generator.rejections),
        )
        logger.info(
            "Event %d: %d/%d eligible tracks, %d/%d eligible clusters, %d candidates, %d recovered",
            result.event_id, result.n_eligible_tracks, result.n_tracks,
            result.n_eligible_clusters, result.n_clusters, result.n_candidates, result.n_commits,
        )
        return result
