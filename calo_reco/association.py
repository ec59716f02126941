from __future__ import annotations

import heapq
import logging
import math
from collections import Counter
from dataclasses import dataclass
from typing import Callable, Dict, Iterable, Iterator, List, NamedTuple, Optional, Sequence

import networkx as nx
import pandas as pd

from calo_reco.config import TrackRecoveryHelixConfig
from calo_reco.errors import AssociationError, NotComputableError
from calo_reco.helpers import CompatibilityPredicates
from calo_reco.objects import Cluster, Track

logger = logging.getLogger(__name__)

__all__ = [
    "AssociationCandidate",
    "AssociationLedger",
    "CandidateGenerator",
    "GreedyResolver",
    "generate_candidates",
    "resolve",
]

# committer(track_id, cluster_id) -> True/None on success, False on failure (or raises)
Committer = Callable[[int, int], Optional[bool]]


@dataclass(slots=True, frozen=True)
class AssociationCandidate:
    r"""
    A surviving (track, cluster) pair and its closeness score.

    The score is :math:`\min(d_\text{track-cluster}, d_\text{closest helix-hit})`;
    the component distances are kept for diagnostics (``inf`` when the
    corresponding distance could not be computed).
    """
    track_id: int
    cluster_id: int
    score: float
    track_cluster_distance: float = math.inf
    closest_helix_distance: float = math.inf
    mean_helix_distance: float = math.inf

    @property
    def sort_key(self):
        """Total order used for greedy selection: score, then track id, then cluster id."""
        return (self.score, self.track_id, self.cluster_id)


class AssociationLedger:
    r"""
    Per-event map ``track_id -> [AssociationCandidate, ...]``.

    Only tracks with at least one candidate appear. After :meth:`normalize`,
    tracks iterate in ascending id and each list is sorted by
    ``(score, cluster_id)``, so the presentation no longer depends on the
    order in which tracks and clusters were scanned.
    """

    __slots__ = ("_entries",)

    def __init__(self) -> None:
        self._entries: Dict[int, List[AssociationCandidate]] = {}

    @classmethod
    def from_candidates(cls, candidates: Iterable[AssociationCandidate]) -> "AssociationLedger":
        ledger = cls()
        for cand in candidates:
            ledger.add(cand)
        ledger.normalize()
        return ledger

    def add(self, candidate: AssociationCandidate) -> None:
        r"""
        Register a candidate.

        Raises
        ------
        ValueError
            If the same (track, cluster) pair is already present.
        """
        entry = self._entries.setdefault(int(candidate.track_id), [])
        if any(c.cluster_id == candidate.cluster_id for c in entry):
            raise ValueError(
                f"Duplicate candidate for track {candidate.track_id} / cluster {candidate.cluster_id}.")
        entry.append(candidate)

    def normalize(self) -> None:
        self._entries = {
            tid: sorted(self._entries[tid], key=lambda c: (c.score, c.cluster_id))
            for tid in sorted(self._entries)
        }

    def candidates(self, track_id: int) -> List[AssociationCandidate]:
        return list(self._entries.get(int(track_id), ()))

    def pop_track(self, track_id: int) -> List[AssociationCandidate]:
        """Remove and return a track's whole candidate list."""
        return self._entries.pop(int(track_id))

    def iter_candidates(self) -> Iterator[AssociationCandidate]:
        for entry in self._entries.values():
            yield from entry

    @property
    def n_candidates(self) -> int:
        return sum(len(v) for v in self._entries.values())

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, track_id: object) -> bool:
        return track_id in self._entries

    def __iter__(self) -> Iterator[int]:
        return iter(self._entries)

    def __repr__(self) -> str:
        return f"AssociationLedger(tracks={len(self)}, candidates={self.n_candidates})"

    def to_frame(self) -> pd.DataFrame:
        """One row per candidate, in ledger order."""
        columns = ["track_id", "cluster_id", "score", "track_cluster_distance",
                   "closest_helix_distance", "mean_helix_distance"]
        rows = [
            (c.track_id, c.cluster_id, c.score, c.track_cluster_distance,
             c.closest_helix_distance, c.mean_helix_distance)
            for c in self.iter_candidates()
        ]
        return pd.DataFrame(rows, columns=columns)

    def to_graph(self) -> nx.Graph:
        r"""
        Bipartite candidate graph.

        Nodes are ``("track", id)`` (``bipartite=0``) and ``("cluster", id)``
        (``bipartite=1``); each candidate is an edge carrying its ``score``.
        """
        G = nx.Graph()
        for c in self.iter_candidates():
            t, k = ("track", c.track_id), ("cluster", c.cluster_id)
            G.add_node(t, bipartite=0)
            G.add_node(k, bipartite=1)
            G.add_edge(t, k, score=c.score)
        return G


class _ClusterSummary(NamedTuple):
    cluster: Cluster
    inner_layer: int
    z: float
    hadronic_energy: float


def _inf_if_nan(value: float) -> float:
    return math.inf if math.isnan(value) else float(value)


def _unique_by_id(objects):
    """Drop repeated handles, keeping the first occurrence in order."""
    seen = set()
    unique = []
    for obj in objects:
        if obj.id not in seen:
            seen.add(obj.id)
            unique.append(obj)
    return unique


class CandidateGenerator:
    r"""
    Build the association ledger for one event.

    Eligible tracks have no cluster, reach the ECal and have no daughters.
    Eligible clusters have hits, no associated track and are not photons.
    Every eligible pair goes through an ordered cascade, stopping at the first
    failing cut:

    1. ``delta_z`` - reject if :math:`|z_t| > |z_c| + \Delta z_\text{max}` or
       :math:`z_t z_c < 0`, with :math:`z_t` the track z at the ECal and
       :math:`z_c` the cluster centroid z at its inner pseudo-layer.
    2. ``chi`` - reject if :math:`|\chi(E_\text{had}, E_\text{track})| > \chi_\text{max}`.
    3. ``layers_crossed`` - reject if the helix crosses more than
       ``max_layers_crossed`` pseudo-layers between :math:`z_t` and :math:`z_c`.
    4. ``proximity`` - accept if :math:`d_{tc} \le d_{tc,\max}` or
       (:math:`d_\text{closest} \le d_{c,\max}` and :math:`d_\text{mean} \le d_{m,\max}`).

    A predicate raising :class:`~calo_reco.errors.NotComputableError` fails
    its own cut. In the proximity cut the two distance families fail
    independently: a non-computable distance counts as ``inf``.

    Parameters
    ----------
    config : TrackRecoveryHelixConfig, optional
        Cut values (defaults if omitted).
    predicates : CompatibilityPredicates, optional
        Distance/consistency backend (reference implementation if omitted).

    Attributes
    ----------
    rejections : collections.Counter
        Per-cut rejection counts of the last :meth:`generate` call.
    n_eligible_tracks, n_eligible_clusters : int
        Eligibility counts of the last :meth:`generate` call.
    """

    __slots__ = ("config", "predicates", "rejections", "n_eligible_tracks", "n_eligible_clusters")

    CUTS = ("delta_z", "chi", "layers_crossed", "proximity")

    def __init__(self, config: Optional[TrackRecoveryHelixConfig] = None,
                 predicates: Optional[CompatibilityPredicates] = None) -> None:
        self.config = config or TrackRecoveryHelixConfig()
        self.predicates = predicates or CompatibilityPredicates()
        self.rejections: Counter = Counter()
        self.n_eligible_tracks = 0
        self.n_eligible_clusters = 0

    @staticmethod
    def is_eligible_track(track: Track) -> bool:
        return (not track.has_associated_cluster) and track.reaches_ecal and not track.daughter_ids

    @staticmethod
    def is_eligible_cluster(cluster: Cluster) -> bool:
        return cluster.n_calo_hits > 0 and not cluster.associated_tracks and not cluster.is_photon

    @staticmethod
    def _summarize(cluster: Cluster) -> _ClusterSummary:
        inner = cluster.inner_pseudo_layer
        return _ClusterSummary(cluster, inner, float(cluster.centroid(inner)[2]), cluster.hadronic_energy)

    def generate(self, tracks: Sequence[Track], clusters: Sequence[Cluster]) -> "AssociationLedger":
        r"""
        Scan all eligible pairs and collect the survivors.

        Returns
        -------
        AssociationLedger
            Normalized ledger (no side effects on tracks or clusters).
        """
        self.rejections = Counter()
        eligible_tracks = [t for t in _unique_by_id(tracks) if self.is_eligible_track(t)]
        summaries = [self._summarize(c) for c in _unique_by_id(clusters) if self.is_eligible_cluster(c)]
        self.n_eligible_tracks = len(eligible_tracks)
        self.n_eligible_clusters = len(summaries)

        ledger = AssociationLedger()
        for track in eligible_tracks:
            for summary in summaries:
                cand = self._evaluate(track, summary)
                if cand is not None:
                    ledger.add(cand)
        ledger.normalize()

        logger.debug(
            "Eligible tracks=%d, clusters=%d; candidates=%d for %d tracks; rejected by %s",
            self.n_eligible_tracks, self.n_eligible_clusters, ledger.n_candidates, len(ledger),
            dict(self.rejections),
        )
        return ledger

    def evaluate_pair(self, track: Track, cluster: Cluster) -> Optional[AssociationCandidate]:
        """Run the cut cascade on one pair (eligibility is not re-checked)."""
        return self._evaluate(track, self._summarize(cluster))

    def _reject(self, cut: str) -> None:
        self.rejections[cut] += 1

    def _evaluate(self, track: Track, summary: _ClusterSummary) -> Optional[AssociationCandidate]:
        cfg = self.config
        pred = self.predicates
        cluster = summary.cluster
        z_track = float(track.state_at_ecal.position[2])
        z_cluster = summary.z

        if (abs(z_track) > abs(z_cluster) + cfg.max_track_cluster_delta_z) or (z_track * z_cluster < 0.0):
            self._reject("delta_z")
            return None

        try:
            chi = pred.track_cluster_chi(summary.hadronic_energy, track.energy_at_dca)
        except NotComputableError:
            self._reject("chi")
            return None
        if not abs(chi) <= cfg.max_absolute_track_cluster_chi:
            self._reject("chi")
            return None

        helix = track.helix_fit_at_ecal
        try:
            n_crossed = pred.n_layers_crossed(helix, z_track, z_cluster)
        except NotComputableError:
            self._reject("layers_crossed")
            return None
        if n_crossed > cfg.max_layers_crossed:
            self._reject("layers_crossed")
            return None

        try:
            d_track = _inf_if_nan(pred.track_cluster_distance(
                track, cluster, cfg.max_search_layer_for_distance, cfg.parallel_distance_cut))
        except NotComputableError:
            d_track = math.inf

        try:
            closest, mean = pred.cluster_helix_distance(
                cluster, helix, summary.inner_layer,
                summary.inner_layer + cfg.helix_comparison_layer_window,
                cfg.helix_comparison_max_occupied_layers)
            closest, mean = _inf_if_nan(closest), _inf_if_nan(mean)
        except NotComputableError:
            closest = mean = math.inf

        if (d_track > cfg.max_track_cluster_distance) and (
                (closest > cfg.max_closest_helix_cluster_distance)
                or (mean > cfg.max_mean_helix_cluster_distance)):
            self._reject("proximity")
            return None

        return AssociationCandidate(
            track_id=track.id,
            cluster_id=cluster.id,
            score=min(d_track, closest),
            track_cluster_distance=d_track,
            closest_helix_distance=closest,
            mean_helix_distance=mean,
        )


class GreedyResolver:
    r"""
    Drain a ledger by repeatedly committing the globally best pair.

    At each step the remaining candidate with the smallest
    ``(score, track_id, cluster_id)`` is committed, and the committed track's
    whole candidate list is dropped. The cluster stays available to other
    tracks, so several tracks may end up on one cluster. Selection uses a
    binary heap with lazy deletion of committed tracks, which yields exactly
    the order of a full rescan per step in :math:`\mathcal{O}(N\log N)`.

    Attributes
    ----------
    commits : list[AssociationCandidate]
        Committed candidates of the last :meth:`resolve` call, in commit order.
    """

    __slots__ = ("commits",)

    def __init__(self) -> None:
        self.commits: List[AssociationCandidate] = []

    def resolve(self, ledger: AssociationLedger, committer: Committer) -> int:
        r"""
        Commit pairs until the ledger is empty.

        Parameters
        ----------
        ledger : AssociationLedger
            Consumed in place.
        committer : callable
            ``committer(track_id, cluster_id)``; returning ``False`` or raising
            :class:`~calo_reco.errors.AssociationError` signals failure.

        Returns
        -------
        int
            Number of commits.

        Raises
        ------
        AssociationError
            On the first failed commit; no further pairs are processed.
        """
        self.commits = []
        flat = list(ledger.iter_candidates())
        heap = [(c.score, c.track_id, c.cluster_id, i) for i, c in enumerate(flat)]
        heapq.heapify(heap)

        while heap:
            _, track_id, cluster_id, i = heapq.heappop(heap)
            if track_id not in ledger:
                continue
            try:
                ok = committer(track_id, cluster_id)
            except AssociationError:
                logger.error("Commit of track %d to cluster %d failed; aborting pass after %d commits",
                             track_id, cluster_id, len(self.commits))
                raise
            if ok is False:
                logger.error("Commit of track %d to cluster %d rejected; aborting pass after %d commits",
                             track_id, cluster_id, len(self.commits))
                raise AssociationError(f"Committer rejected track {track_id} / cluster {cluster_id}.")
            ledger.pop_track(track_id)
            self.commits.append(flat[i])

        return len(self.commits)


def generate_candidates(tracks: Sequence[Track], clusters: Sequence[Cluster],
                        config: Optional[TrackRecoveryHelixConfig] = None,
                        predicates: Optional[CompatibilityPredicates] = None) -> AssociationLedger:
    """Functional shortcut for :meth:`CandidateGenerator.generate`."""
    return CandidateGenerator(config, predicates).generate(tracks, clusters)


def resolve(ledger: AssociationLedger, committer: Committer) -> int:
    """Functional shortcut for :meth:`GreedyResolver.resolve`."""
    return GreedyResolver().resolve(ledger, committer)
