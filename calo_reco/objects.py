from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, field
from typing import Dict, List, Optional

import numpy as np

from calo_reco.helix import Helix

__all__ = ["CaloHit", "TrackState", "Track", "Cluster"]


@dataclass(slots=True, frozen=True, eq=False)
class CaloHit:
    """A single calorimeter cell with its discretized depth (pseudo-layer)."""
    id: int
    position: np.ndarray           # (3,) mm
    pseudo_layer: int
    hadronic_energy: float         # GeV
    electromagnetic_energy: float = 0.0
    mc_particle_id: Optional[int] = None


@dataclass(slots=True, eq=False)
class TrackState:
    """Position (mm) and momentum (GeV) of a track at some point along its path."""
    position: np.ndarray           # (3,)
    momentum: np.ndarray           # (3,)

    def direction(self) -> np.ndarray:
        """Unit momentum vector."""
        norm = float(np.linalg.norm(self.momentum))
        if norm == 0.0:
            return np.zeros(3, dtype=np.float64)
        return np.asarray(self.momentum, dtype=np.float64) / norm


@dataclass(slots=True, eq=False)
class Track:
    r"""
    Reconstructed charged track, owned by :class:`~calo_reco.managers.TrackManager`.

    Topology (``parent_ids``, ``sibling_ids``, ``daughter_ids``) and the
    association state (``associated_cluster``) are stored as **handles** (ids)
    into the event store; the association engine never holds object
    references across a pass.

    Attributes
    ----------
    id : int
        Stable handle, unique within an event.
    momentum_at_dca : ndarray, shape (3,)
        Momentum at the 2D distance of closest approach (GeV).
    energy_at_dca : float
        Energy at the distance of closest approach (GeV).
    charge_sign : int
        ``+1`` or ``-1``.
    state_at_ecal : TrackState
        (Possibly projected) track state at the ECal front face.
    reaches_ecal : bool
        Whether the track reaches the ECal.
    helix_fit_at_ecal : Helix, optional
        Helix fitted to ``state_at_ecal``.
    associated_cluster : int, optional
        Handle of the associated cluster; mutated only by the event store.
    """
    id: int
    momentum_at_dca: np.ndarray
    energy_at_dca: float
    charge_sign: int
    state_at_ecal: TrackState
    reaches_ecal: bool
    helix_fit_at_ecal: Optional[Helix] = None
    mass: float = 0.13957
    d0: float = 0.0
    z0: float = 0.0
    mc_particle_id: Optional[int] = None
    parent_ids: List[int] = field(default_factory=list)
    sibling_ids: List[int] = field(default_factory=list)
    daughter_ids: List[int] = field(default_factory=list)
    associated_cluster: Optional[int] = None

    @property
    def has_associated_cluster(self) -> bool:
        return self.associated_cluster is not None

    @property
    def momentum_magnitude_at_dca(self) -> float:
        return float(np.linalg.norm(self.momentum_at_dca))


@dataclass(slots=True, eq=False)
class Cluster:
    r"""
    Calorimeter cluster, owned by :class:`~calo_reco.managers.ClusterManager`.

    Hits are grouped by pseudo-layer on demand; the innermost pseudo-layer,
    per-layer centroids and the hadronic energy are derived from hit content.
    ``associated_tracks`` is an ordered list of track handles; several tracks
    may legitimately point at the same cluster.
    """
    id: int
    hits: List[CaloHit] = field(default_factory=list)
    is_photon: bool = False
    mc_particle_id: Optional[int] = None
    associated_tracks: List[int] = field(default_factory=list)
    _by_layer: Optional[Dict[int, List[CaloHit]]] = field(default=None, init=False, repr=False)

    @property
    def n_calo_hits(self) -> int:
        return len(self.hits)

    def add_hit(self, hit: CaloHit) -> None:
        self.hits.append(hit)
        self._by_layer = None

    def ordered_hits(self) -> Dict[int, List[CaloHit]]:
        """Hits keyed by pseudo-layer, layers in ascending order."""
        if self._by_layer is None:
            by_layer: Dict[int, List[CaloHit]] = {}
            for hit in sorted(self.hits, key=lambda h: (h.pseudo_layer, h.id)):
                by_layer.setdefault(int(hit.pseudo_layer), []).append(hit)
            self._by_layer = by_layer
        return self._by_layer

    @property
    def inner_pseudo_layer(self) -> int:
        if not self.hits:
            raise ValueError(f"Cluster {self.id} has no hits; inner pseudo-layer undefined.")
        return next(iter(self.ordered_hits()))

    @property
    def outer_pseudo_layer(self) -> int:
        if not self.hits:
            raise ValueError(f"Cluster {self.id} has no hits; outer pseudo-layer undefined.")
        return next(reversed(self.ordered_hits()))

    def centroid(self, pseudo_layer: int) -> np.ndarray:
        r"""
        Unweighted mean position of the hits in ``pseudo_layer``.

        Raises
        ------
        KeyError
            If the layer holds no hits.
        """
        hits = self.ordered_hits().get(int(pseudo_layer))
        if not hits:
            raise KeyError(f"Cluster {self.id} has no hits in pseudo-layer {pseudo_layer}.")
        return np.mean(np.stack([h.position for h in hits]), axis=0)

    @property
    def hadronic_energy(self) -> float:
        return float(sum(h.hadronic_energy for h in self.hits))

    @property
    def electromagnetic_energy(self) -> float:
        return float(sum(h.electromagnetic_energy for h in self.hits))

    def hit_arrays(self, min_layer: Optional[int] = None, max_layer: Optional[int] = None):
        r"""
        Hit positions and pseudo-layers as contiguous arrays, optionally
        restricted to ``min_layer <= layer <= max_layer``.

        Returns
        -------
        positions : ndarray, shape (N, 3)
        layers : ndarray, shape (N,), int64
        """
        sel = [h for h in self.hits
               if (min_layer is None or h.pseudo_layer >= min_layer)
               and (max_layer is None or h.pseudo_layer <= max_layer)]
        if not sel:
            return np.empty((0, 3), dtype=np.float64), np.empty((0,), dtype=np.int64)
        positions = np.ascontiguousarray(np.stack([h.position for h in sel]), dtype=np.float64)
        layers = np.fromiter((h.pseudo_layer for h in sel), dtype=np.int64, count=len(sel))
        return positions, layers

    @property
    def main_mc_particle_id(self) -> Optional[int]:
        """MC particle contributing the most hit energy (falls back to ``mc_particle_id``)."""
        weights: Counter = Counter()
        for h in self.hits:
            if h.mc_particle_id is not None:
                weights[h.mc_particle_id] += h.hadronic_energy + h.electromagnetic_energy
        if not weights:
            return self.mc_particle_id
        return max(weights.items(), key=lambda kv: (kv[1], -kv[0]))[0]
