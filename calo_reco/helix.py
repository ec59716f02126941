from __future__ import annotations

from typing import Tuple

import numpy as np
from numba import njit

from calo_reco.errors import NotComputableError

__all__ = ["Helix", "FIELD_TO_CURVATURE"]

# pT [GeV] = FIELD_TO_CURVATURE * B [T] * R [mm]
FIELD_TO_CURVATURE = 0.299792458e-3


@njit(cache=True, fastmath=True)
def _helix_distances(points: np.ndarray, xc: float, yc: float, radius: float,
                     phi0: float, q: float, z0: float, dz_dt: float) -> np.ndarray:
    r"""
    Distances of a batch of points to a helix, as ``(xy, z, 3d)`` rows.

    For a point at transverse angle :math:`\psi` around the helix axis, the
    turning angle from the reference point is
    :math:`\alpha = -q(\psi-\phi_0) \bmod 2\pi`; the helix turn
    :math:`k\in\mathbb{Z}` is chosen to minimize the longitudinal residual

    .. math::

        \Delta z = z_p - \bigl(z_0 + \tfrac{dz}{dt}\,R(\alpha + 2\pi k)\bigr).
    """
    n = points.shape[0]
    out = np.empty((n, 3), dtype=np.float64)
    two_pi = 2.0 * np.pi
    for i in range(n):
        dx = points[i, 0] - xc
        dy = points[i, 1] - yc
        d_xy = abs(np.sqrt(dx * dx + dy * dy) - radius)
        if dz_dt == 0.0:
            d_z = points[i, 2] - z0
        else:
            alpha = (-q * (np.arctan2(dy, dx) - phi0)) % two_pi
            turns = np.floor(((points[i, 2] - z0) / (dz_dt * radius) - alpha) / two_pi + 0.5)
            d_z = points[i, 2] - (z0 + dz_dt * radius * (alpha + two_pi * turns))
        out[i, 0] = d_xy
        out[i, 1] = abs(d_z)
        out[i, 2] = np.sqrt(d_xy * d_xy + d_z * d_z)
    return out


class Helix:
    r"""
    Charged-particle trajectory in a uniform solenoidal field :math:`B_z`.

    The helix is parameterized by the transverse arc length :math:`t` measured
    from the reference point (units mm). With transverse radius
    :math:`R = p_T / (0.2998\cdot 10^{-3}\,|B_z|)`, rotation sign
    :math:`q=\mathrm{sign}(Q)\,\mathrm{sign}(B_z)` and axis :math:`(x_c,y_c)`:

    .. math::

        \phi(t) = \phi_0 - q\,t/R,\qquad
        (x,y) = (x_c,y_c) + R(\cos\phi,\sin\phi),\qquad
        z = z_0 + t\,p_z/p_T.

    Parameters
    ----------
    position : array_like, shape (3,)
        Reference point (mm).
    momentum : array_like, shape (3,)
        Momentum at the reference point (GeV).
    charge : int or float
        Charge sign; must be non-zero.
    b_field : float
        Longitudinal field (Tesla); must be non-zero.

    Raises
    ------
    NotComputableError
        For neutral particles, zero field or vanishing transverse momentum.
    """

    __slots__ = ("reference_point", "momentum", "charge", "b_field",
                 "radius", "center", "phi0", "pt", "dz_dt", "_q")

    def __init__(self, position, momentum, charge: float, b_field: float) -> None:
        pos = np.asarray(position, dtype=np.float64).reshape(3)
        mom = np.asarray(momentum, dtype=np.float64).reshape(3)
        if charge == 0:
            raise NotComputableError("Cannot build a helix for a neutral particle.")
        if b_field == 0:
            raise NotComputableError("Cannot build a helix without a magnetic field.")
        pt = float(np.hypot(mom[0], mom[1]))
        if pt <= 0.0:
            raise NotComputableError("Cannot build a helix with zero transverse momentum.")

        self.reference_point = pos
        self.momentum = mom
        self.charge = float(np.sign(charge))
        self.b_field = float(b_field)
        self.pt = pt
        self.radius = pt / (FIELD_TO_CURVATURE * abs(self.b_field))
        self.dz_dt = float(mom[2] / pt)
        self._q = self.charge * float(np.sign(self.b_field))

        ux, uy = mom[0] / pt, mom[1] / pt
        self.center = pos[:2] + self.radius * self._q * np.array([uy, -ux])
        self.phi0 = float(np.arctan2(pos[1] - self.center[1], pos[0] - self.center[0]))

    def __repr__(self) -> str:
        return (f"Helix(R={self.radius:.1f}, center=({self.center[0]:.1f}, {self.center[1]:.1f}), "
                f"z0={self.reference_point[2]:.1f}, dz/dt={self.dz_dt:.3f}, q={self.charge:+.0f})")

    def point_at(self, t) -> np.ndarray:
        r"""
        Position(s) at transverse arc length ``t``.

        Returns
        -------
        ndarray, shape (N, 3)
            One row per entry of ``t`` (a scalar gives a single row).
        """
        t = np.atleast_1d(np.asarray(t, dtype=np.float64))
        phi = self.phi0 - self._q * t / self.radius
        out = np.empty((t.size, 3), dtype=np.float64)
        out[:, 0] = self.center[0] + self.radius * np.cos(phi)
        out[:, 1] = self.center[1] + self.radius * np.sin(phi)
        out[:, 2] = self.reference_point[2] + self.dz_dt * t
        return out

    def momentum_at(self, t: float) -> np.ndarray:
        """Momentum vector (GeV) at transverse arc length ``t``."""
        phi = self.phi0 - self._q * float(t) / self.radius
        return np.array([self._q * self.pt * np.sin(phi),
                         -self._q * self.pt * np.cos(phi),
                         self.momentum[2]], dtype=np.float64)

    def arc_length_to_z(self, z) -> np.ndarray:
        """Transverse arc length at which the helix reaches ``z``."""
        if self.dz_dt == 0.0:
            raise NotComputableError("Helix has no longitudinal motion; z is never reached.")
        return (np.asarray(z, dtype=np.float64) - self.reference_point[2]) / self.dz_dt

    def points_in_z(self, z) -> np.ndarray:
        r"""
        Position(s) at which the helix reaches the given ``z`` value(s).

        Raises
        ------
        NotComputableError
            If :math:`p_z = 0`.
        """
        return self.point_at(self.arc_length_to_z(z))

    def distance_to_points(self, points) -> np.ndarray:
        r"""
        Distances from many points to the helix.

        Parameters
        ----------
        points : array_like, shape (N, 3)

        Returns
        -------
        ndarray, shape (N, 3)
            Columns are the transverse distance to the helix circle, the
            longitudinal distance on the nearest turn, and their quadrature sum.
        """
        pts = np.ascontiguousarray(np.atleast_2d(np.asarray(points, dtype=np.float64)))
        if pts.shape[0] == 0:
            return np.empty((0, 3), dtype=np.float64)
        return _helix_distances(pts, float(self.center[0]), float(self.center[1]),
                                float(self.radius), self.phi0, self._q,
                                float(self.reference_point[2]), self.dz_dt)

    def distance_to_point(self, point) -> Tuple[float, float, float]:
        """Single-point version of :meth:`distance_to_points`."""
        d = self.distance_to_points(np.asarray(point, dtype=np.float64).reshape(1, 3))[0]
        return float(d[0]), float(d[1]), float(d[2])
