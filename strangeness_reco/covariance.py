from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Iterable, Tuple

import numpy as np

from strangeness_reco.linalg_kernels import pack_lower, robust_spd_inverse, symmetrize, unpack_lower
from strangeness_reco.solver import ClosestApproach
from strangeness_reco.track import TrackState

logger = logging.getLogger(__name__)

__all__ = ["CovarianceQuality", "CandidateCovariance", "CovariancePropagator"]


class CovarianceQuality(Enum):
    """Fit-quality flag attached to every covariance block."""
    OK = "ok"
    NOT_POSITIVE_SEMIDEFINITE = "not_positive_semidefinite"
    SINGULAR = "singular"


_SEVERITY = {
    CovarianceQuality.OK: 0,
    CovarianceQuality.NOT_POSITIVE_SEMIDEFINITE: 1,
    CovarianceQuality.SINGULAR: 2,
}


@dataclass(frozen=True, eq=False)
class CandidateCovariance:
    """
    Packed position and summed-momentum covariance of a candidate.

    Both blocks use the ``(xx, yx, yy, zx, zy, zz)`` packing.
    """
    position: np.ndarray
    momentum: np.ndarray
    quality: CovarianceQuality = CovarianceQuality.OK

    def full6(self) -> np.ndarray:
        """Block-diagonal 6×6 covariance of ``(x, y, z, px, py, pz)``."""
        out = np.zeros((6, 6))
        out[:3, :3] = unpack_lower(self.position, 3)
        out[3:, 3:] = unpack_lower(self.momentum, 3)
        return out


class CovariancePropagator:
    r"""
    Derive candidate covariances from a converged closest approach.

    - Position: inverse of the normal matrix
      :math:`N = \sum_i R\,W_i\,R^\top` accumulated by the solver.
    - Momentum: :math:`\sum_i C_i^{(p)}`, the momentum blocks of each track's
      global Cartesian covariance (daughters taken as uncorrelated).

    Both results are symmetrised. The quality flag reports ``SINGULAR`` when
    :math:`N` could not be inverted without an eigenvalue floor and
    ``NOT_POSITIVE_SEMIDEFINITE`` when an output has an eigenvalue below
    ``-psd_tol`` times its spectral radius.

    Parameters
    ----------
    psd_tol : float, optional
        Relative tolerance of the positive semi-definiteness check.
    """

    __slots__ = ("psd_tol",)

    def __init__(self, psd_tol: float = 1e-9):
        self.psd_tol = float(psd_tol)

    def classify(self, m: np.ndarray) -> CovarianceQuality:
        if not np.all(np.isfinite(m)):
            return CovarianceQuality.SINGULAR
        w = np.linalg.eigvalsh(symmetrize(m))
        scale = float(np.max(np.abs(w))) if w.size else 0.0
        if w.min() < -self.psd_tol * max(scale, 1e-300):
            return CovarianceQuality.NOT_POSITIVE_SEMIDEFINITE
        return CovarianceQuality.OK

    def position_covariance(self, approach: ClosestApproach) -> Tuple[np.ndarray, CovarianceQuality]:
        """3×3 vertex covariance and its quality."""
        if approach.normal_matrix is None:
            return np.zeros((3, 3)), CovarianceQuality.SINGULAR
        try:
            cov, regular = robust_spd_inverse(approach.normal_matrix)
        except np.linalg.LinAlgError as exc:
            logger.debug("normal matrix not invertible: %s", exc)
            return np.zeros((3, 3)), CovarianceQuality.SINGULAR
        if not regular:
            return cov, CovarianceQuality.SINGULAR
        return cov, self.classify(cov)

    def momentum_covariance(self, tracks: Iterable[TrackState]) -> Tuple[np.ndarray, CovarianceQuality]:
        """Summed 3×3 momentum covariance and its quality."""
        total = np.zeros((3, 3))
        for t in tracks:
            total += t.cartesian_covariance()[3:, 3:]
        total = symmetrize(total)
        return total, self.classify(total)

    def propagate(self, approach: ClosestApproach) -> CandidateCovariance:
        pos, q_pos = self.position_covariance(approach)
        mom, q_mom = self.momentum_covariance(approach.tracks)
        quality = max(q_pos, q_mom, key=_SEVERITY.get)
        if quality is not CovarianceQuality.OK:
            logger.debug("candidate covariance flagged %s", quality.value)
        return CandidateCovariance(position=pack_lower(pos), momentum=pack_lower(mom), quality=quality)
