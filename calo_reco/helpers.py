from __future__ import annotations

import math
from typing import Optional, Tuple

import numpy as np

from calo_reco.errors import NotComputableError
from calo_reco.geometry import DetectorGeometry
from calo_reco.helix import Helix
from calo_reco.objects import Cluster, Track

__all__ = [
    "track_cluster_compatibility",
    "n_layers_crossed",
    "track_cluster_distance",
    "cluster_helix_distance",
    "CompatibilityPredicates",
]


def track_cluster_compatibility(cluster_energy: float, track_energy: float,
                                hadronic_energy_resolution: float = 0.6) -> float:
    r"""
    Energy-momentum consistency between a cluster and a track.

    .. math::

        \chi = \frac{E_\text{cluster} - E_\text{track}}{\sigma_E},\qquad
        \sigma_E = \text{resolution}\cdot\sqrt{E_\text{track}}.

    Raises
    ------
    NotComputableError
        If the track energy or the resolution is not positive.
    """
    if track_energy <= 0.0 or hadronic_energy_resolution <= 0.0:
        raise NotComputableError(
            f"Cannot compute chi for track energy {track_energy} "
            f"and resolution {hadronic_energy_resolution}.")
    sigma = hadronic_energy_resolution * math.sqrt(track_energy)
    return (cluster_energy - track_energy) / sigma


def n_layers_crossed(helix: Optional[Helix], z_start: float, z_end: float,
                     geometry: DetectorGeometry, n_sampling_points: int = 100) -> int:
    r"""
    Number of pseudo-layers crossed along a helix between two ``z`` values.

    The helix is sampled at ``n_sampling_points + 1`` equally spaced ``z``
    values from ``z_start`` to ``z_end`` (inclusive). Consecutive samples
    contribute the absolute difference of their pseudo-layers, so a step
    spanning several layers counts every one of them.

    Raises
    ------
    NotComputableError
        If there is no helix, or the helix has no longitudinal motion while
        the two ``z`` values differ.
    """
    if helix is None:
        raise NotComputableError("Track has no helix fit at the ECal.")
    if z_start == z_end:
        return 0
    zs = np.linspace(float(z_start), float(z_end), int(n_sampling_points) + 1)
    layers = geometry.pseudo_layer(helix.points_in_z(zs))
    return int(np.abs(np.diff(layers)).sum())


def track_cluster_distance(track: Track, cluster: Cluster, max_search_layer: int,
                           parallel_distance_cut: float) -> float:
    r"""
    Closest perpendicular distance between a cluster and the straight-line
    projection of a track from its ECal state.

    Only hits with pseudo-layer ``<= max_search_layer`` and a longitudinal
    offset :math:`|\hat u\cdot(\mathbf{x}_\text{hit}-\mathbf{x}_\text{ecal})|`
    within ``parallel_distance_cut`` are considered; the distance is
    :math:`\|\hat u\times(\mathbf{x}_\text{hit}-\mathbf{x}_\text{ecal})\|`.

    Raises
    ------
    NotComputableError
        If the track direction is undefined or no hit passes the selection.
    """
    state = track.state_at_ecal
    direction = state.direction()
    if not direction.any():
        raise NotComputableError(f"Track {track.id} has no direction at the ECal.")

    positions, _ = cluster.hit_arrays(max_layer=int(max_search_layer))
    if positions.shape[0] == 0:
        raise NotComputableError(
            f"Cluster {cluster.id} has no hits up to pseudo-layer {max_search_layer}.")

    diff = positions - np.asarray(state.position, dtype=np.float64)
    parallel = diff @ direction
    keep = np.abs(parallel) <= parallel_distance_cut
    if not keep.any():
        raise NotComputableError(
            f"No hit of cluster {cluster.id} within the parallel distance cut of track {track.id}.")
    perpendicular = np.linalg.norm(np.cross(direction, diff[keep]), axis=1)
    return float(perpendicular.min())


def cluster_helix_distance(cluster: Cluster, helix: Optional[Helix], start_layer: int,
                           end_layer: int, max_occupied_layers: int) -> Tuple[float, float]:
    r"""
    Closest and mean 3D distance between a helix and the hits of a cluster.

    Layers ``start_layer..end_layer`` are visited in order; at most
    ``max_occupied_layers`` layers that actually contain hits are used.

    Returns
    -------
    closest, mean : float

    Raises
    ------
    NotComputableError
        If there is no helix, the layer range is inverted, or no hit is found.
    """
    if helix is None:
        raise NotComputableError("Track has no helix fit at the ECal.")
    if start_layer > end_layer:
        raise NotComputableError(f"Invalid layer window [{start_layer}, {end_layer}].")

    selected = []
    n_occupied = 0
    for layer, hits in cluster.ordered_hits().items():
        if layer < start_layer:
            continue
        if layer > end_layer:
            break
        n_occupied += 1
        if n_occupied > max_occupied_layers:
            break
        selected.extend(h.position for h in hits)

    if not selected:
        raise NotComputableError(
            f"Cluster {cluster.id} has no hits in layers [{start_layer}, {end_layer}].")
    distances = helix.distance_to_points(np.stack(selected))[:, 2]
    return float(distances.min()), float(distances.mean())


class CompatibilityPredicates:
    r"""
    Pluggable set of track-cluster compatibility functions used by the
    candidate generator.

    The default implementation delegates to the module-level reference
    functions, bound to a :class:`DetectorGeometry` and an energy resolution.
    Alternative backends (faster kernels, detector-specific distances, test
    stubs) only need to provide the same four methods; any of them may raise
    :class:`~calo_reco.errors.NotComputableError`.

    Parameters
    ----------
    geometry : DetectorGeometry, optional
        Used for pseudo-layer lookups along the helix.
    hadronic_energy_resolution : float, optional
        Stochastic term of the hadronic energy resolution (default ``0.6``).
    n_sampling_points : int, optional
        Helix sampling density for :meth:`n_layers_crossed` (default ``100``).
    """

    __slots__ = ("geometry", "hadronic_energy_resolution", "n_sampling_points")

    def __init__(self, geometry: Optional[DetectorGeometry] = None,
                 hadronic_energy_resolution: float = 0.6,
                 n_sampling_points: int = 100) -> None:
        self.geometry = geometry or DetectorGeometry()
        self.hadronic_energy_resolution = float(hadronic_energy_resolution)
        self.n_sampling_points = int(n_sampling_points)

    def track_cluster_chi(self, cluster_energy: float, track_energy: float) -> float:
        return track_cluster_compatibility(cluster_energy, track_energy,
                                           self.hadronic_energy_resolution)

    def n_layers_crossed(self, helix: Optional[Helix], z_start: float, z_end: float) -> int:
        return n_layers_crossed(helix, z_start, z_end, self.geometry, self.n_sampling_points)

    def track_cluster_distance(self, track: Track, cluster: Cluster, max_search_layer: int,
                               parallel_distance_cut: float) -> float:
        return track_cluster_distance(track, cluster, max_search_layer, parallel_distance_cut)

    def cluster_helix_distance(self, cluster: Cluster, helix: Optional[Helix], start_layer: int,
                               end_layer: int, max_occupied_layers: int) -> Tuple[float, float]:
        return cluster_helix_distance(cluster, helix, start_layer, end_layer, max_occupied_layers)
