from __future__ import annotations

import logging
import math
from dataclasses import dataclass, fields
from enum import Enum
from typing import Any, List, Mapping, Optional, Tuple

import numpy as np

from strangeness_reco.errors import ConfigurationError, PropagationDivergence
from strangeness_reco.material import MaterialBudgetService
from strangeness_reco.track import TrackState, normalize_alpha

logger = logging.getLogger(__name__)

__all__ = [
    "SolverConfig",
    "SolveStatus",
    "ClosestApproach",
    "SolveResult",
    "ClosestApproachSolver",
    "crossing_seeds",
]

_LINE_CRV = 1e-9


@dataclass(frozen=True)
class SolverConfig:
    r"""
    Settings of :class:`ClosestApproachSolver`.

    Attributes
    ----------
    max_r : float
        Discard vertices beyond this transverse radius (cm).
    min_param_change : float
        Stop once every Newton step in local X is below this (cm).
    min_rel_chi2_change : float
        Stop once :math:`\chi^2_{new} > \chi^2_{old}\cdot` this factor.
    max_dz_ini : float
        Skip seeds whose initial :math:`|z_1 - z_2|` exceeds this (cm).
    max_chi2 : float
        Discard candidates above this :math:`\chi^2`.
    max_iterations : int
        Newton iteration ceiling; reaching it means "not converged".
    propagate_to_pca : bool
        Re-transport the input tracks (with material) to the found PCA.
    use_abs_dca : bool
        Minimise the plain distance instead of the covariance-weighted one.
    use_weighted_pca : bool
        Place the vertex at the covariance-weighted mean of the two points.
    max_snp, max_step, max_steps
        Propagation bounds forwarded to :meth:`TrackState.propagate_to_x`.
    """
    max_r: float = 200.0
    min_param_change: float = 1e-3
    min_rel_chi2_change: float = 0.9
    max_dz_ini: float = 1e9
    max_chi2: float = 1e9
    max_iterations: int = 20
    propagate_to_pca: bool = True
    use_abs_dca: bool = True
    use_weighted_pca: bool = False
    max_snp: float = 0.85
    max_step: float = 2.0
    max_steps: int = 1000

    @classmethod
    def from_mapping(cls, cfg: Optional[Mapping[str, Any]]) -> "SolverConfig":
        """Build from a config section; unknown keys raise :class:`ConfigurationError`."""
        cfg = dict(cfg or {})
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(cfg) - known)
        if unknown:
            raise ConfigurationError(f"unknown solver settings: {', '.join(unknown)}")
        if cfg.get("max_iterations", 1) < 1:
            raise ConfigurationError("max_iterations must be >= 1")
        return cls(**cfg)


class SolveStatus(Enum):
    """Outcome of one two-track solve."""
    CONVERGED = "converged"
    NOT_CONVERGED = "not_converged"
    PROPAGATION_FAILED = "propagation_failed"
    OUT_OF_RANGE = "out_of_range"
    NO_SEED = "no_seed"


# lower rank wins when reporting the failure of a multi-seed solve
_FAILURE_RANK = {
    SolveStatus.NOT_CONVERGED: 0,
    SolveStatus.OUT_OF_RANGE: 1,
    SolveStatus.PROPAGATION_FAILED: 2,
    SolveStatus.NO_SEED: 3,
}


@dataclass(frozen=True, eq=False)
class ClosestApproach:
    r"""
    Converged two-track closest approach.

    Attributes
    ----------
    tracks : tuple of TrackState
        Both tracks at their points of closest approach.
    vertex : ndarray, shape (3,)
        Global vertex estimate.
    chi2 : float
        Minimised :math:`D^\top M D`.
    dca : float
        Distance between the two closest points (cm).
    n_iterations : int
    alpha : float
        Frame in which the minimisation ran.
    n_candidates : int
        Number of seeds that converged within range.
    normal_matrix : ndarray, shape (3, 3), optional
        :math:`\sum_i W_i` in the global frame; ``None`` when a track has no
        usable position covariance.
    """
    tracks: Tuple[TrackState, TrackState]
    vertex: np.ndarray
    chi2: float
    dca: float
    n_iterations: int
    alpha: float
    n_candidates: int
    normal_matrix: Optional[np.ndarray] = None


@dataclass(frozen=True)
class SolveResult:
    status: SolveStatus
    approach: Optional[ClosestApproach] = None

    @property
    def ok(self) -> bool:
        return self.status is SolveStatus.CONVERGED and self.approach is not None


# ---------------------------------------------------------------------------- seeds
def _transverse_curve(track: TrackState, bz: float) -> Tuple[np.ndarray, float, Optional[np.ndarray]]:
    """``(center_or_point, signed_radius, direction)``; ``direction`` is set for lines."""
    center, rad = track.circle(bz)
    if center is None or abs(1.0 / rad) < _LINE_CRV:
        return track.xyz()[:2], math.inf, track.direction_xy()
    return center, rad, None


def _circle_circle(c0: np.ndarray, r0: float, c1: np.ndarray, r1: float) -> List[np.ndarray]:
    r0, r1 = abs(r0), abs(r1)
    d_vec = c1 - c0
    d = float(np.hypot(d_vec[0], d_vec[1]))
    if d < 1e-12:
        return []
    u = d_vec / d
    if d > r0 + r1:
        # separated: midpoint of the facing points
        return [0.5 * ((c0 + u * r0) + (c1 - u * r1))]
    if d < abs(r0 - r1):
        # nested: midpoint of the nearest points, on the side of the inner circle
        return [0.5 * ((c0 + u * r0) + (c1 + u * r1))] if r0 > r1 else [0.5 * ((c0 - u * r0) + (c1 - u * r1))]
    a = (r0 * r0 - r1 * r1 + d * d) / (2.0 * d)
    h = math.sqrt(max(r0 * r0 - a * a, 0.0))
    base = c0 + a * u
    perp = np.array([-u[1], u[0]])
    if h < 1e-9:
        return [base]
    return [base + h * perp, base - h * perp]


def _line_circle(p: np.ndarray, u: np.ndarray, c: np.ndarray, r: float) -> List[np.ndarray]:
    r = abs(r)
    foot = p + float(np.dot(c - p, u)) * u
    off = foot - c
    dist = float(np.hypot(off[0], off[1]))
    if dist >= r:
        if dist < 1e-12:
            return [foot]
        return [0.5 * (foot + c + off / dist * r)]
    h = math.sqrt(r * r - dist * dist)
    return [foot + h * u, foot - h * u]


def _line_line(p0: np.ndarray, u0: np.ndarray, p1: np.ndarray, u1: np.ndarray) -> List[np.ndarray]:
    cross = u0[0] * u1[1] - u0[1] * u1[0]
    dp = p1 - p0
    if abs(cross) < 1e-12:
        # parallel: halfway between p0 and its projection on the other line
        proj = p1 + float(np.dot(p0 - p1, u1)) * u1
        return [0.5 * (p0 + proj)]
    t = (dp[0] * u1[1] - dp[1] * u1[0]) / cross
    return [p0 + t * u0]


def crossing_seeds(t0: TrackState, t1: TrackState, bz: float) -> List[np.ndarray]:
    r"""
    Transverse seed points for the closest-approach search.

    Each track's projection on the XY plane is a circle (or a line for
    neutral / straight tracks). Crossing points of the two curves are returned
    (at most two); when the curves do not cross, the midpoint of their nearest
    points is returned instead.

    Returns
    -------
    list of ndarray, shape (2,)
        Global XY seeds, possibly empty for degenerate (concentric) circles.
    """
    a0, r0, u0 = _transverse_curve(t0, bz)
    a1, r1, u1 = _transverse_curve(t1, bz)
    if u0 is None and u1 is None:
        return _circle_circle(a0, r0, a1, r1)
    if u0 is not None and u1 is not None:
        return _line_line(a0, u0, a1, u1)
    if u0 is not None:
        return _line_circle(a0, u0, a1, r1)
    return _line_circle(a1, u1, a0, r0)


# ---------------------------------------------------------------------------- solver
def _position_weight(track: TrackState) -> np.ndarray:
    r"""
    Inverse local position covariance, X error taken equal to the Y error.

    .. math::

        W = \begin{pmatrix} 1/c_{yy} & 0 & 0\\
                            0 & c_{zz}/\det & -c_{yz}/\det\\
                            0 & -c_{yz}/\det & c_{yy}/\det \end{pmatrix}
    """
    cyy, cyz, czz = track.cov[0, 0], track.cov[1, 0], track.cov[1, 1]
    det = cyy * czz - cyz * cyz
    if not (cyy > 0.0 and det > 0.0):
        raise np.linalg.LinAlgError(f"degenerate position covariance (cyy={cyy:.3g}, det={det:.3g})")
    W = np.zeros((3, 3))
    W[0, 0] = 1.0 / cyy
    W[1, 1] = czz / det
    W[1, 2] = W[2, 1] = -cyz / det
    W[2, 2] = cyy / det
    return W


def _rot_z(alpha: float) -> np.ndarray:
    ca, sa = math.cos(alpha), math.sin(alpha)
    return np.array([[ca, -sa, 0.0], [sa, ca, 0.0], [0.0, 0.0, 1.0]])


class ClosestApproachSolver:
    r"""
    Two-track point-of-closest-approach finder.

    For every transverse seed (see :func:`crossing_seeds`) both tracks are
    rotated to the seed azimuth and moved to the seed X. Newton iterations
    then adjust the two local reference coordinates :math:`(x_0, x_1)` to
    minimise

    .. math::

        \chi^2 = D^\top M D,\qquad D = P_0(x_0) - P_1(x_1),

    with :math:`M = I/2` (absolute metric) or
    :math:`M = W_0 (W_0 + W_1)^{-1} W_1` (covariance weighted). With
    :math:`P_i'`, :math:`P_i''` the local derivatives of the track positions,

    .. math::

        g = 2\begin{pmatrix} P_0'^\top M D \\ -P_1'^\top M D\end{pmatrix},\quad
        H = 2\begin{pmatrix} P_0'^\top M P_0' + P_0''^\top M D & -P_0'^\top M P_1' \\
                             -P_0'^\top M P_1' & P_1'^\top M P_1' - P_1''^\top M D\end{pmatrix},

    and the step is :math:`\Delta x = -H^{-1} g`.

    Non-convergence, propagation failures and range cuts are reported through
    :class:`SolveResult`; :class:`numpy.linalg.LinAlgError` from the Newton
    system is left to the caller.

    Parameters
    ----------
    config : SolverConfig, optional

    Notes
    -----
    The instance keeps scratch buffers and must not be shared between threads.
    """

    __slots__ = ("config", "log", "_grad", "_hess", "_M_abs", "n_calls", "n_converged")

    def __init__(self, config: Optional[SolverConfig] = None):
        self.config = config or SolverConfig()
        self.log = logging.getLogger(self.__class__.__name__)
        self._grad = np.zeros(2)
        self._hess = np.zeros((2, 2))
        self._M_abs = 0.5 * np.eye(3)
        self.n_calls = 0
        self.n_converged = 0

    # -- helpers ---------------------------------------------------------------
    def _metric(self, t0: TrackState, t1: TrackState) -> np.ndarray:
        if self.config.use_abs_dca:
            return self._M_abs
        W0, W1 = _position_weight(t0), _position_weight(t1)
        M = W0 @ np.linalg.solve(W0 + W1, W1)
        return 0.5 * (M + M.T)

    @staticmethod
    def _local_point(track: TrackState) -> np.ndarray:
        return np.array([track.x, track.y, track.z])

    def _chi2(self, t0: TrackState, t1: TrackState) -> float:
        M = self._metric(t0, t1)
        D = self._local_point(t0) - self._local_point(t1)
        return float(D @ M @ D)

    def _newton_step(self, t0: TrackState, t1: TrackState, bz: float) -> np.ndarray:
        M = self._metric(t0, t1)
        D = self._local_point(t0) - self._local_point(t1)
        d1a, d2a = t0.local_derivatives(bz)
        d1b, d2b = t1.local_derivatives(bz)
        MD = M @ D
        Md1b = M @ d1b
        g, H = self._grad, self._hess
        g[0] = 2.0 * d1a @ MD
        g[1] = -2.0 * d1b @ MD
        H[0, 0] = 2.0 * (d1a @ M @ d1a + d2a @ MD)
        H[1, 1] = 2.0 * (d1b @ Md1b - d2b @ MD)
        H[0, 1] = H[1, 0] = -2.0 * d1a @ Md1b
        return -np.linalg.solve(H, g)

    def _move(self, track: TrackState, xk: float, bz: float) -> TrackState:
        c = self.config
        return track.propagate_to_x(xk, bz, max_snp=c.max_snp, max_step=c.max_step, max_steps=c.max_steps)

    def _vertex_local(self, t0: TrackState, t1: TrackState) -> np.ndarray:
        P0, P1 = self._local_point(t0), self._local_point(t1)
        if not self.config.use_weighted_pca:
            return 0.5 * (P0 + P1)
        W0, W1 = _position_weight(t0), _position_weight(t1)
        return np.linalg.solve(W0 + W1, W0 @ P0 + W1 @ P1)

    # -- per seed --------------------------------------------------------------
    def _solve_seed(self,
                    t0: TrackState,
                    t1: TrackState,
                    seed: np.ndarray,
                    bz: float) -> Tuple[SolveStatus, Optional[Tuple[TrackState, TrackState, float, int, float]]]:
        c = self.config
        alpha = normalize_alpha(math.atan2(seed[1], seed[0]))
        xs = float(np.hypot(seed[0], seed[1]))
        try:
            a = self._move(t0.rotate(alpha), xs, bz)
            b = self._move(t1.rotate(alpha), xs, bz)
        except PropagationDivergence as exc:
            self.log.debug("seed (%.3f, %.3f) unreachable: %s", seed[0], seed[1], exc)
            return SolveStatus.PROPAGATION_FAILED, None
        if abs(a.z - b.z) > c.max_dz_ini:
            return SolveStatus.NO_SEED, None

        chi2 = self._chi2(a, b)
        for it in range(1, c.max_iterations + 1):
            dx = self._newton_step(a, b, bz)
            try:
                a_new = self._move(a, a.x + dx[0], bz)
                b_new = self._move(b, b.x + dx[1], bz)
            except PropagationDivergence as exc:
                self.log.debug("newton step %d diverged: %s", it, exc)
                return SolveStatus.PROPAGATION_FAILED, None
            chi2_new = self._chi2(a_new, b_new)
            if np.all(np.abs(dx) < c.min_param_change):
                return SolveStatus.CONVERGED, (a_new, b_new, chi2_new, it, alpha)
            if chi2_new > chi2 * c.min_rel_chi2_change:
                if chi2_new > chi2:
                    return SolveStatus.CONVERGED, (a, b, chi2, it, alpha)
                return SolveStatus.CONVERGED, (a_new, b_new, chi2_new, it, alpha)
            a, b, chi2 = a_new, b_new, chi2_new
        return SolveStatus.NOT_CONVERGED, None

    # -- public ----------------------------------------------------------------
    def process(self,
                t0: TrackState,
                t1: TrackState,
                bz: float,
                material: Optional[MaterialBudgetService] = None) -> SolveResult:
        """
        Find the point of closest approach of ``t0`` and ``t1``.

        Parameters
        ----------
        t0, t1 : TrackState
            Input tracks; not modified.
        bz : float
            Field (kG).
        material : MaterialBudgetService, optional
            Used only for the final transport to the vertex.

        Returns
        -------
        SolveResult
            ``CONVERGED`` with the best (lowest χ²) candidate, or the most
            informative failure status.

        Raises
        ------
        numpy.linalg.LinAlgError
            Singular Newton system or degenerate weights.
        """
        c = self.config
        self.n_calls += 1
        try:
            seeds = crossing_seeds(t0, t1, bz)
        except PropagationDivergence:
            return SolveResult(SolveStatus.PROPAGATION_FAILED)
        if not seeds:
            return SolveResult(SolveStatus.NO_SEED)

        best = None
        n_candidates = 0
        failure = SolveStatus.NO_SEED
        for seed in seeds:
            if float(np.hypot(seed[0], seed[1])) > c.max_r:
                failure = min(failure, SolveStatus.OUT_OF_RANGE, key=_FAILURE_RANK.get)
                continue
            status, found = self._solve_seed(t0, t1, seed, bz)
            if status is not SolveStatus.CONVERGED:
                failure = min(failure, status, key=_FAILURE_RANK.get)
                continue
            a, b, chi2, n_it, alpha = found
            vertex = _rot_z(alpha) @ self._vertex_local(a, b)
            if float(np.hypot(vertex[0], vertex[1])) > c.max_r or chi2 > c.max_chi2:
                failure = min(failure, SolveStatus.OUT_OF_RANGE, key=_FAILURE_RANK.get)
                continue
            n_candidates += 1
            if best is None or chi2 < best[2]:
                best = (a, b, chi2, n_it, alpha, vertex)

        if best is None:
            return SolveResult(failure)

        a, b, chi2, n_it, alpha, vertex = best
        if c.propagate_to_pca and material is not None:
            try:
                a = t0.rotate(alpha).propagate_to_x(a.x, bz, material, max_snp=c.max_snp,
                                                    max_step=c.max_step, max_steps=c.max_steps)
                b = t1.rotate(alpha).propagate_to_x(b.x, bz, material, max_snp=c.max_snp,
                                                    max_step=c.max_step, max_steps=c.max_steps)
            except PropagationDivergence as exc:
                self.log.debug("material transport to PCA failed: %s", exc)
                return SolveResult(SolveStatus.PROPAGATION_FAILED)

        normal = None
        try:
            R = _rot_z(alpha)
            normal = R @ (_position_weight(a) + _position_weight(b)) @ R.T
            normal = 0.5 * (normal + normal.T)
        except np.linalg.LinAlgError:
            # tracks without position errors: no normal matrix to offer
            pass
        dca = float(np.linalg.norm(self._local_point(a) - self._local_point(b)))
        self.n_converged += 1
        approach = ClosestApproach(
            tracks=(a, b), vertex=vertex, chi2=chi2, dca=dca, n_iterations=n_it,
            alpha=alpha, n_candidates=n_candidates, normal_matrix=normal,
        )
        return SolveResult(SolveStatus.CONVERGED, approach)

    def __repr__(self) -> str:
        return f"ClosestApproachSolver({self.config})"
