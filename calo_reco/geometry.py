from __future__ import annotations

import logging
from dataclasses import dataclass, fields
from typing import Any, Mapping, Optional

import numpy as np
from scipy.optimize import brentq

from calo_reco.errors import ConfigurationError
from calo_reco.helix import Helix
from calo_reco.objects import TrackState

logger = logging.getLogger(__name__)

__all__ = ["DetectorGeometry"]


@dataclass(frozen=True)
class DetectorGeometry:
    r"""
    Coarse calorimeter geometry: a barrel cylinder closed by two endcap planes.

    Positions inside the ECal front face (:math:`r < R_b` and :math:`|z| < Z_e`)
    sit in pseudo-layer ``0``. Outside, the penetration depth is

    .. math::

        d = \max\bigl(r - R_b,\; |z| - Z_e\bigr),

    and the pseudo-layer is :math:`1 + \lfloor d / \Delta \rfloor`, capped at
    ``max_pseudo_layer``.

    Parameters
    ----------
    ecal_barrel_inner_radius : float
        :math:`R_b` in mm.
    ecal_endcap_inner_z : float
        :math:`Z_e` in mm.
    layer_thickness : float
        Pseudo-layer spacing :math:`\Delta` in mm.
    max_pseudo_layer : int
        Outermost pseudo-layer.
    b_field : float
        Solenoid field (Tesla).
    """
    ecal_barrel_inner_radius: float = 1808.0
    ecal_endcap_inner_z: float = 2411.0
    layer_thickness: float = 6.0
    max_pseudo_layer: int = 150
    b_field: float = 3.5

    def __post_init__(self) -> None:
        if self.ecal_barrel_inner_radius <= 0 or self.ecal_endcap_inner_z <= 0:
            raise ConfigurationError("ECal inner radius and endcap z must be positive.")
        if self.layer_thickness <= 0:
            raise ConfigurationError("layer_thickness must be positive.")
        if self.max_pseudo_layer < 1:
            raise ConfigurationError("max_pseudo_layer must be >= 1.")

    @classmethod
    def from_mapping(cls, mapping: Optional[Mapping[str, Any]]) -> "DetectorGeometry":
        """Build from a ``"geometry"`` config block; unknown keys are rejected."""
        mapping = dict(mapping or {})
        known = {f.name: f.type for f in fields(cls)}
        unknown = sorted(set(mapping) - set(known))
        if unknown:
            raise ConfigurationError(f"Unknown geometry settings: {', '.join(unknown)}")
        kwargs = {}
        for key, value in mapping.items():
            kwargs[key] = int(value) if key == "max_pseudo_layer" else float(value)
        return cls(**kwargs)

    def pseudo_layer(self, points) -> np.ndarray:
        r"""
        Vectorized pseudo-layer of positions.

        Parameters
        ----------
        points : array_like, shape (N, 3) or (3,)

        Returns
        -------
        ndarray, shape (N,), int64
        """
        pts = np.atleast_2d(np.asarray(points, dtype=np.float64))
        r = np.hypot(pts[:, 0], pts[:, 1])
        depth = np.maximum(r - self.ecal_barrel_inner_radius,
                           np.abs(pts[:, 2]) - self.ecal_endcap_inner_z)
        layers = np.where(depth < 0.0, 0, 1 + np.floor(depth / self.layer_thickness))
        return np.minimum(layers, self.max_pseudo_layer).astype(np.int64)

    def pseudo_layer_of(self, point) -> int:
        return int(self.pseudo_layer(point)[0])

    def is_inside_tracker(self, point) -> bool:
        return self.pseudo_layer_of(point) == 0

    def project_to_ecal(self, helix: Helix, n_scan: int = 512) -> Optional[TrackState]:
        r"""
        Propagate a helix outward to the ECal front face.

        The barrel crossing is searched within the first turn (the transverse
        motion is periodic, so later turns cannot reach a radius the first one
        misses) by scanning :math:`f(t) = r(t) - R_b` and refining the first
        sign change with Brent's method. The endcap crossing is analytic,
        :math:`t_e = (\pm Z_e - z_0)\,p_T/p_z`. The earlier of the two wins.

        Returns
        -------
        TrackState or None
            State at the crossing, or ``None`` if the helix never reaches the ECal.
        """
        start = helix.reference_point
        if self.pseudo_layer_of(start) > 0:
            return TrackState(position=start.copy(), momentum=helix.momentum.copy())

        t_endcap = None
        if helix.dz_dt != 0.0:
            z_face = np.sign(helix.dz_dt) * self.ecal_endcap_inner_z
            t_endcap = float(helix.arc_length_to_z(z_face))

        t_turn = 2.0 * np.pi * helix.radius
        t_hi = t_turn if t_endcap is None else min(t_turn, t_endcap)

        def f(t: float) -> float:
            p = helix.point_at(t)[0]
            return float(np.hypot(p[0], p[1]) - self.ecal_barrel_inner_radius)

        t_barrel = None
        ts = np.linspace(0.0, t_hi, n_scan)
        pts = helix.point_at(ts)
        vals = np.hypot(pts[:, 0], pts[:, 1]) - self.ecal_barrel_inner_radius
        above = np.flatnonzero(vals >= 0.0)
        if above.size:
            i = int(above[0])
            t_barrel = float(ts[0]) if i == 0 else float(brentq(f, ts[i - 1], ts[i], xtol=1e-6))

        if t_barrel is not None:
            t_hit = t_barrel
        elif t_endcap is not None and t_endcap > 0.0:
            t_hit = t_endcap
        else:
            logger.debug("Helix %r never reaches the ECal.", helix)
            return None

        return TrackState(position=helix.point_at(t_hit)[0], momentum=helix.momentum_at(t_hit))
