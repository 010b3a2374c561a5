from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field, replace
from typing import Optional, Tuple

import numpy as np
from numba import njit
from scipy.optimize import newton

from strangeness_reco.errors import PropagationDivergence
from strangeness_reco.kinematics import PION_MASS
from strangeness_reco.linalg_kernels import bethe_bloch_solid, pack_lower, symmetrize, unpack_lower
from strangeness_reco.material import MaterialBudgetService, MaterialCorrection

logger = logging.getLogger(__name__)

__all__ = [
    "B2C",
    "ALMOST0",
    "ALMOST1",
    "TrackState",
    "normalize_alpha",
]

# kGauss * cm -> GeV/c
B2C = -0.299792458e-3
ALMOST0 = 1e-12
ALMOST1 = 1.0 - 1e-6

_MS_CONST2 = 0.0136 * 0.0136


def normalize_alpha(alpha: float) -> float:
    """Wrap an angle to ``[-pi, pi)``."""
    return (alpha + math.pi) % (2.0 * math.pi) - math.pi


@njit(cache=True)
def _helix_step(params: np.ndarray, dx: float, crv: float, kb: float, max_snp: float):
    r"""
    Exact helix transport of ``[y, z, snp, tgl, q/pt]`` by ``dx`` along local X.

    Returns ``(ok, params_new, F)`` where ``F`` is the 5×5 transport Jacobian.
    ``ok`` is ``False`` when either end point leaves ``|snp| < max_snp``.
    """
    out = params.copy()
    F = np.eye(5)
    f1 = params[2]
    x2r = crv * dx
    f2 = f1 + x2r
    if not (abs(f1) < max_snp and abs(f2) < max_snp):
        return False, out, F
    r1 = math.sqrt((1.0 - f1) * (1.0 + f1))
    r2 = math.sqrt((1.0 - f2) * (1.0 + f2))
    rs = r1 + r2
    g = (f1 + f2) / rs
    tgl = params[3]
    q = params[4]

    if abs(x2r) < 1e-4:
        s = dx * math.sqrt(1.0 + g * g)
        dsdf1 = dx * f1 / (r1 * r1 * r1)
        dsdq = dx * dx * kb * f1 / (2.0 * r1 * r1 * r1)
    else:
        s = (math.asin(f2) - math.asin(f1)) / crv
        dsdf1 = (1.0 / r2 - 1.0 / r1) / crv
        dsdq = (dx / r2 - s) / q

    out[0] = params[0] + dx * g
    out[1] = params[1] + tgl * s
    out[2] = f2

    rs2 = rs * rs
    F[0, 2] = dx * (2.0 * rs + (f1 + f2) * (f1 / r1 + f2 / r2)) / rs2
    F[0, 4] = dx * kb * dx * (rs + (f1 + f2) * f2 / r2) / rs2
    F[1, 2] = tgl * dsdf1
    F[1, 3] = s
    F[1, 4] = tgl * dsdq
    F[2, 4] = kb * dx
    ok = True
    for i in range(5):
        if not math.isfinite(out[i]):
            ok = False
    return ok, out, F


@dataclass(frozen=True, eq=False)
class TrackState:
    r"""
    Local helix parameterisation of a charged (or neutral) trajectory.

    The track lives in a frame rotated by ``alpha`` around the beam axis and is
    referenced at local coordinate ``x``. Parameters are

    .. math::

        \mathbf{p} = [\,y,\; z,\; \sin\phi,\; \tan\lambda,\; q/p_T\,]^\top,

    with :math:`\phi` the local azimuth of the momentum and :math:`\lambda`
    the dip angle. For neutral tracks the last parameter holds :math:`1/p_T`
    and the curvature is zero. The curvature in a field :math:`B_z` (kG) is

    .. math::

        \kappa = (q/p_T)\,B_z\,c_{B},\qquad c_B = -2.99792458\times10^{-4}.

    Instances are immutable; every transform returns a new state.

    Attributes
    ----------
    x : float
        Local reference X (cm).
    alpha : float
        Frame rotation (rad).
    params : ndarray, shape (5,)
        ``[y, z, snp, tgl, q/pt]``.
    cov : ndarray, shape (5, 5)
        Parameter covariance. A 15-element packed lower triangle is accepted
        on construction.
    charge : int
        ``-1``, ``0`` or ``+1``.
    pid_mass : float
        Mass hypothesis (GeV/c²) used for material corrections.
    """
    x: float
    alpha: float
    params: np.ndarray
    cov: np.ndarray = field(default_factory=lambda: np.zeros((5, 5)))
    charge: int = 1
    pid_mass: float = PION_MASS

    def __post_init__(self):
        params = np.array(self.params, dtype=np.float64).reshape(5)
        cov = np.array(self.cov, dtype=np.float64)
        if cov.ndim == 1:
            cov = unpack_lower(cov, 5)
        if cov.shape != (5, 5):
            raise ValueError(f"track covariance must be 5x5 or packed 15, got {cov.shape}")
        object.__setattr__(self, "x", float(self.x))
        object.__setattr__(self, "alpha", float(self.alpha))
        object.__setattr__(self, "params", params)
        object.__setattr__(self, "cov", cov)
        object.__setattr__(self, "charge", int(self.charge))

    # ------------------------------------------------------------------ access
    @property
    def y(self) -> float:
        return float(self.params[0])

    @property
    def z(self) -> float:
        return float(self.params[1])

    @property
    def snp(self) -> float:
        return float(self.params[2])

    @property
    def tgl(self) -> float:
        return float(self.params[3])

    @property
    def q2pt(self) -> float:
        return float(self.params[4])

    @property
    def csp(self) -> float:
        snp = self.snp
        return math.sqrt(max((1.0 - snp) * (1.0 + snp), 0.0))

    @property
    def pt(self) -> float:
        q = abs(self.q2pt)
        return 1.0 / q if q > ALMOST0 else math.inf

    @property
    def p(self) -> float:
        return self.pt * math.sqrt(1.0 + self.tgl * self.tgl)

    @property
    def eta(self) -> float:
        return math.asinh(self.tgl)

    @property
    def phi(self) -> float:
        """Global azimuth of the momentum in ``[0, 2pi)``."""
        return (self.alpha + math.asin(max(-1.0, min(1.0, self.snp)))) % (2.0 * math.pi)

    def curvature(self, bz: float) -> float:
        """Signed transverse curvature (1/cm); zero for neutral tracks."""
        if self.charge == 0:
            return 0.0
        return self.q2pt * bz * B2C

    def xyz(self) -> np.ndarray:
        """Global position ``(x, y, z)``."""
        ca, sa = math.cos(self.alpha), math.sin(self.alpha)
        return np.array([self.x * ca - self.y * sa, self.x * sa + self.y * ca, self.z])

    def pxpypz(self) -> np.ndarray:
        """Global momentum ``(px, py, pz)``."""
        pt = self.pt
        ca, sa = math.cos(self.alpha), math.sin(self.alpha)
        plx, ply = pt * self.csp, pt * self.snp
        return np.array([plx * ca - ply * sa, plx * sa + ply * ca, pt * self.tgl])

    def cov_packed(self) -> np.ndarray:
        """Covariance as the 15-element packed lower triangle."""
        return pack_lower(self.cov)

    def _check_domain(self, max_snp: float = 1.0) -> None:
        if not np.all(np.isfinite(self.params)) or not math.isfinite(self.x):
            raise PropagationDivergence(f"non-finite track parameters {self.params}")
        if abs(self.snp) >= max_snp:
            raise PropagationDivergence(f"|snp|={abs(self.snp):.6f} outside the valid domain")

    # ------------------------------------------------------------------ frame
    def rotate(self, alpha: float) -> "TrackState":
        r"""
        Express the track in the frame rotated by ``alpha``.

        With :math:`\Delta\alpha = \alpha' - \alpha`, :math:`c=\cos\Delta\alpha`,
        :math:`s=\sin\Delta\alpha`:

        .. math::

            x' = x c + y s,\quad y' = -x s + y c,\quad
            \sin\phi' = \sin\phi\, c - \cos\phi\, s.

        The covariance is transported with
        :math:`J=\mathrm{diag}(c,\,1,\,c + s\,\sin\phi/\cos\phi,\,1,\,1)`.

        Raises
        ------
        PropagationDivergence
            If the track would point backwards in the new frame or leaves the
            valid ``snp`` domain.
        """
        self._check_domain()
        alpha = normalize_alpha(alpha)
        ca, sa = math.cos(alpha - self.alpha), math.sin(alpha - self.alpha)
        snp, csp = self.snp, self.csp
        if csp * ca + snp * sa < 0.0:
            raise PropagationDivergence(f"rotation by {alpha - self.alpha:.4f} rad reverses the track")
        snp_new = snp * ca - csp * sa
        if abs(snp_new) >= ALMOST1:
            raise PropagationDivergence(f"rotated |snp|={abs(snp_new):.6f} outside the valid domain")
        x_new = self.x * ca + self.y * sa
        params = self.params.copy()
        params[0] = -self.x * sa + self.y * ca
        params[2] = snp_new
        J = np.diag([ca, 1.0, ca + snp / csp * sa, 1.0, 1.0])
        cov = symmetrize(J @ self.cov @ J.T)
        return replace(self, x=x_new, alpha=alpha, params=params, cov=cov)

    # ------------------------------------------------------------------ propagation
    def _step(self, xk: float, bz: float, max_snp: float) -> "TrackState":
        dx = xk - self.x
        kb = 0.0 if self.charge == 0 else bz * B2C
        ok, params, F = _helix_step(self.params, dx, self.curvature(bz), kb, max_snp)
        if not ok:
            raise PropagationDivergence(f"transport to x={xk:.4f} left the valid domain (|snp| >= {max_snp})")
        cov = symmetrize(F @ self.cov @ F.T)
        return replace(self, x=xk, params=params, cov=cov)

    def propagate_to_x(self,
                       xk: float,
                       bz: float,
                       material: Optional[MaterialBudgetService] = None,
                       *,
                       max_snp: float = ALMOST1,
                       max_step: float = 2.0,
                       max_steps: int = 1000) -> "TrackState":
        r"""
        Transport the track to local ``X = xk`` in a uniform field ``bz`` (kG).

        Parameters are moved along the exact helix and the covariance is
        transported with the analytic Jacobian, :math:`C' = F C F^\top`.
        Without a material service the transport is a single exact step.
        With one, the path is cut into steps of at most ``max_step`` cm; each
        step queries the service with its global end points and applies the
        returned energy loss and multiple scattering. A ``None`` answer leaves
        that step field-only.

        Parameters
        ----------
        xk : float
            Target local X (cm).
        bz : float
            Longitudinal field (kG).
        material : MaterialBudgetService, optional
            Material lookup; absence degrades to field-only transport.
        max_snp : float, optional
            Bound on :math:`|\sin\phi|` along the path.
        max_step : float, optional
            Maximum step length along X when material is applied.
        max_steps : int, optional
            Maximum number of steps.

        Returns
        -------
        TrackState

        Raises
        ------
        PropagationDivergence
            Malformed input, domain exit, or too many steps.
        """
        self._check_domain(max_snp)
        if not math.isfinite(xk):
            raise PropagationDivergence(f"non-finite target x={xk}")
        if material is None:
            return self._step(float(xk), bz, max_snp)

        dx = xk - self.x
        n_steps = max(1, int(math.ceil(abs(dx) / max_step)))
        if n_steps > max_steps:
            raise PropagationDivergence(f"{n_steps} steps needed to reach x={xk:.2f}, limit is {max_steps}")
        # moving along +X follows the particle, so material removes energy
        sign = 1.0 if dx > 0.0 else -1.0
        track = self
        for i in range(1, n_steps + 1):
            target = xk if i == n_steps else self.x + dx * i / n_steps
            start = track.xyz()
            track = track._step(target, bz, max_snp)
            corr = material.query(start, track.xyz())
            if corr is not None:
                track = track.correct_for_material(corr, sign)
        return track

    def _x_at_radius(self, r: float, bz: float, max_snp: float) -> float:
        crv = self.curvature(bz)
        kb = 0.0 if self.charge == 0 else bz * B2C

        def f(xk: float) -> float:
            ok, params, _ = _helix_step(self.params, xk - self.x, crv, kb, max_snp)
            if not ok:
                raise PropagationDivergence(f"radius search left the valid domain at x={xk:.4f}")
            return math.hypot(xk, params[0]) - r

        x0 = math.sqrt(max(r * r - self.y * self.y, 0.0))
        try:
            return float(newton(f, x0, maxiter=50, tol=1e-6))
        except (RuntimeError, OverflowError) as exc:
            raise PropagationDivergence(f"no crossing with radius {r:.3f} cm: {exc}") from exc

    def propagate_to_radius(self,
                            r: float,
                            bz: float,
                            material: Optional[MaterialBudgetService] = None,
                            *,
                            max_snp: float = ALMOST1,
                            max_step: float = 2.0,
                            max_steps: int = 1000) -> "TrackState":
        r"""
        Transport the track to the cylinder of transverse radius ``r``.

        The local X of the crossing solves
        :math:`f(X) = \sqrt{X^2 + y(X)^2} - r = 0` with
        :func:`scipy.optimize.newton`; the track is then moved there with
        :meth:`propagate_to_x`.

        Raises
        ------
        PropagationDivergence
            If the root search fails or the transport diverges.
        """
        self._check_domain(max_snp)
        xk = self._x_at_radius(float(r), bz, max_snp)
        return self.propagate_to_x(xk, bz, material, max_snp=max_snp, max_step=max_step, max_steps=max_steps)

    def local_derivatives(self, bz: float) -> Tuple[np.ndarray, np.ndarray]:
        r"""
        First and second derivatives of the local position w.r.t. ``x``.

        .. math::

            y' = \frac{\sin\phi}{\cos\phi},\quad z' = \frac{\tan\lambda}{\cos\phi},\quad
            y'' = \frac{\kappa}{\cos^3\phi},\quad
            z'' = \frac{\tan\lambda\,\kappa\sin\phi}{\cos^3\phi}.
        """
        snp, csp, tgl = self.snp, self.csp, self.tgl
        crv = self.curvature(bz)
        csp3 = csp * csp * csp
        d1 = np.array([1.0, snp / csp, tgl / csp])
        d2 = np.array([0.0, crv / csp3, tgl * crv * snp / csp3])
        return d1, d2

    # ------------------------------------------------------------------ geometry
    def circle(self, bz: float) -> Tuple[Optional[np.ndarray], float]:
        """
        Transverse projection as ``(center, signed_radius)`` in global XY.

        Returns ``(None, inf)`` for (nearly) straight tracks.
        """
        crv = self.curvature(bz)
        if abs(crv) < 1e-9:
            return None, math.inf
        rad = 1.0 / crv
        xc = self.x - self.snp * rad
        yc = self.y + self.csp * rad
        ca, sa = math.cos(self.alpha), math.sin(self.alpha)
        return np.array([xc * ca - yc * sa, xc * sa + yc * ca]), rad

    def direction_xy(self) -> np.ndarray:
        """Global transverse unit direction of motion."""
        phi = self.phi
        return np.array([math.cos(phi), math.sin(phi)])

    def dca_xy_to(self, point: np.ndarray, bz: float) -> float:
        r"""
        Signed transverse distance of closest approach to ``point``.

        For a circle of signed radius :math:`R` and centre :math:`C`,
        :math:`d = \mathrm{sign}(\kappa)\,(|R| - |C - P|)`; for a straight
        track :math:`d = ((\mathbf{r} - P)\times\hat{u})_z`. Both are positive
        when ``point`` lies to the left of the direction of motion.
        """
        self._check_domain()
        point = np.asarray(point, dtype=np.float64)
        center, rad = self.circle(bz)
        if center is None:
            d = self.xyz()[:2] - point[:2]
            u = self.direction_xy()
            return float(d[0] * u[1] - d[1] * u[0])
        dist = float(np.hypot(center[0] - point[0], center[1] - point[1]))
        return (abs(rad) - dist) * math.copysign(1.0, rad)

    # ------------------------------------------------------------------ cartesian
    def cartesian_covariance(self) -> np.ndarray:
        r"""
        6×6 covariance of ``(x, y, z, px, py, pz)`` in the global frame.

        The local Jacobian has :math:`\partial p_x/\partial\sin\phi =
        -p_T\sin\phi/\cos\phi`, :math:`\partial p_y/\partial\sin\phi = p_T`,
        :math:`\partial p_z/\partial\tan\lambda = p_T` and
        :math:`\partial p_i/\partial(q/p_T) = -p_i/(q/p_T)`; the result is then
        rotated by ``alpha``.
        """
        pt, snp, csp, tgl, q = self.pt, self.snp, self.csp, self.tgl, self.q2pt
        J = np.zeros((6, 5))
        J[1, 0] = 1.0
        J[2, 1] = 1.0
        J[3, 2] = -pt * snp / csp
        J[3, 4] = -pt * csp / q
        J[4, 2] = pt
        J[4, 4] = -pt * snp / q
        J[5, 3] = pt
        J[5, 4] = -pt * tgl / q
        R = _rotation6(self.alpha)
        A = R @ J
        return symmetrize(A @ self.cov @ A.T)

    @classmethod
    def from_cartesian(cls,
                       xyz: np.ndarray,
                       pxpypz: np.ndarray,
                       cov6: Optional[np.ndarray] = None,
                       charge: int = 0,
                       pid_mass: float = PION_MASS) -> "TrackState":
        r"""
        Build a track from a global position, momentum and 6×6 covariance.

        The frame is aligned with the transverse momentum
        (:math:`\alpha = \mathrm{atan2}(p_y, p_x)`, so :math:`\sin\phi = 0`).
        For ``charge == 0`` the last parameter is :math:`1/p_T`.

        Parameters
        ----------
        xyz, pxpypz : array_like, shape (3,)
        cov6 : array_like, shape (6, 6) or (21,), optional
            Covariance of ``(x, y, z, px, py, pz)``; zero if omitted.
        charge : int, optional
        pid_mass : float, optional
        """
        xyz = np.asarray(xyz, dtype=np.float64)
        mom = np.asarray(pxpypz, dtype=np.float64)
        pt = float(np.hypot(mom[0], mom[1]))
        if not pt > 0.0:
            raise PropagationDivergence("zero transverse momentum, frame undefined")
        alpha = math.atan2(mom[1], mom[0])
        ca, sa = math.cos(alpha), math.sin(alpha)
        xl = xyz[0] * ca + xyz[1] * sa
        yl = -xyz[0] * sa + xyz[1] * ca
        tgl = mom[2] / pt
        c = float(charge) if charge != 0 else 1.0
        params = np.array([yl, xyz[2], 0.0, tgl, c / pt])

        cov5 = np.zeros((5, 5))
        if cov6 is not None:
            cov6 = np.asarray(cov6, dtype=np.float64)
            if cov6.ndim == 1:
                cov6 = unpack_lower(cov6, 6)
            R = _rotation6(alpha).T
            cl = R @ cov6 @ R.T
            J = np.zeros((5, 6))
            J[0, 1] = 1.0
            J[1, 0] = -tgl
            J[1, 2] = 1.0
            J[2, 4] = 1.0 / pt
            J[3, 3] = -mom[2] / (pt * pt)
            J[3, 5] = 1.0 / pt
            J[4, 3] = -c / (pt * pt)
            cov5 = symmetrize(J @ cl @ J.T)
        return cls(x=xl, alpha=alpha, params=params, cov=cov5, charge=int(charge), pid_mass=pid_mass)

    # ------------------------------------------------------------------ material
    def correct_for_material(self, corr: MaterialCorrection, sign: float = 1.0) -> "TrackState":
        r"""
        Apply multiple scattering and mean energy loss for one layer.

        Multiple scattering adds to the angular covariance with
        :math:`\theta^2 = 0.0136^2\,x/X_0 / (\beta^2 p^2)`:

        .. math::

            C_{\phi\phi} \mathrel{+}= \theta^2 (1-\sin^2\phi)(1+\tan^2\lambda),\quad
            C_{\lambda\lambda} \mathrel{+}= \theta^2 (1+\tan^2\lambda)^2,

            C_{q\lambda} \mathrel{+}= \theta^2\tan\lambda\,(q/p_T)(1+\tan^2\lambda),\quad
            C_{qq} \mathrel{+}= \theta^2\tan^2\lambda\,(q/p_T)^2.

        Energy loss uses :func:`~strangeness_reco.linalg_kernels.bethe_bloch_solid`,
        :math:`\Delta E = \langle dE/dx\rangle\,x\rho\cdot\mathrm{sign}`, and
        rescales :math:`q/p_T` by :math:`p/p'`. ``sign > 0`` removes energy
        (propagation along the motion), ``sign < 0`` restores it.

        Raises
        ------
        PropagationDivergence
            If the particle would stop in the layer.
        """
        if self.charge == 0:
            return self
        p = self.p
        if not (p > 0.0 and math.isfinite(p)):
            raise PropagationDivergence(f"cannot correct a track with p={p}")
        m = self.pid_mass
        p2 = p * p
        m2 = m * m
        beta2 = p2 / (p2 + m2)
        snp, tgl, q = self.snp, self.tgl, self.q2pt
        t2 = 1.0 + tgl * tgl
        params = self.params.copy()
        cov = self.cov.copy()

        if corr.x2x0 > 0.0:
            theta2 = _MS_CONST2 / (beta2 * p2) * corr.x2x0
            cov[2, 2] += theta2 * (1.0 - snp * snp) * t2
            cov[3, 3] += theta2 * t2 * t2
            cov[4, 3] += theta2 * tgl * q * t2
            cov[3, 4] = cov[4, 3]
            cov[4, 4] += theta2 * tgl * tgl * q * q

        if corr.xrho != 0.0:
            de = bethe_bloch_solid(p / m) * corr.xrho * sign
            e_new = math.sqrt(p2 + m2) - de
            if e_new <= m:
                raise PropagationDivergence(f"particle stopped in material (dE={de:.4g} GeV)")
            scale = p / math.sqrt(e_new * e_new - m2)
            params[4] *= scale
            cov[4, :] *= scale
            cov[:, 4] *= scale
        return replace(self, params=params, cov=symmetrize(cov))

    def __repr__(self) -> str:
        return (f"TrackState(x={self.x:.4f}, alpha={self.alpha:.4f}, "
                f"params={np.array2string(self.params, precision=5)}, charge={self.charge})")


def _rotation6(alpha: float) -> np.ndarray:
    """Block-diagonal local→global rotation for ``(x, y, z, px, py, pz)``."""
    ca, sa = math.cos(alpha), math.sin(alpha)
    r3 = np.array([[ca, -sa, 0.0], [sa, ca, 0.0], [0.0, 0.0, 1.0]])
    R = np.zeros((6, 6))
    R[:3, :3] = r3
    R[3:, 3:] = r3
    return R
