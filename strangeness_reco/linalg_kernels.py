from __future__ import annotations

import math
from typing import Tuple

import numpy as np
from numba import njit

__all__ = [
    "pack_lower",
    "unpack_lower",
    "symmetrize",
    "robust_spd_inverse",
    "bethe_bloch_solid",
]


@njit(cache=True)
def _pack_lower_kernel(m: np.ndarray) -> np.ndarray:
    n = m.shape[0]
    out = np.empty(n * (n + 1) // 2, dtype=np.float64)
    k = 0
    for i in range(n):
        for j in range(i + 1):
            out[k] = m[i, j]
            k += 1
    return out


@njit(cache=True)
def _unpack_lower_kernel(v: np.ndarray, n: int) -> np.ndarray:
    out = np.empty((n, n), dtype=np.float64)
    k = 0
    for i in range(n):
        for j in range(i + 1):
            out[i, j] = v[k]
            out[j, i] = v[k]
            k += 1
    return out


def pack_lower(m: np.ndarray) -> np.ndarray:
    r"""
    Pack a symmetric matrix into its row-major lower triangle.

    For a :math:`3\times 3` matrix the order is
    ``(xx, yx, yy, zx, zy, zz)``; for the :math:`5\times 5` track covariance it
    is the usual 15-element ``(yy, zy, zz, snp·y, snp·z, snp·snp, ...)`` layout.

    Parameters
    ----------
    m : array_like, shape (n, n)

    Returns
    -------
    ndarray, shape (n(n+1)/2,)
    """
    m = np.ascontiguousarray(m, dtype=np.float64)
    if m.ndim != 2 or m.shape[0] != m.shape[1]:
        raise ValueError(f"expected a square matrix, got shape {m.shape}")
    return _pack_lower_kernel(m)


def unpack_lower(v: np.ndarray, n: int | None = None) -> np.ndarray:
    r"""
    Inverse of :func:`pack_lower`.

    Parameters
    ----------
    v : array_like, shape (n(n+1)/2,)
        Packed lower triangle.
    n : int, optional
        Matrix size. Inferred from ``len(v)`` when omitted.

    Returns
    -------
    ndarray, shape (n, n)
        Symmetric matrix.
    """
    v = np.ascontiguousarray(v, dtype=np.float64).ravel()
    if n is None:
        n = int(round((math.sqrt(8 * v.size + 1) - 1) / 2))
    if n * (n + 1) // 2 != v.size:
        raise ValueError(f"{v.size} elements do not form a packed {n}x{n} matrix")
    return _unpack_lower_kernel(v, int(n))


def symmetrize(m: np.ndarray) -> np.ndarray:
    """Return :math:`(M + M^\\top)/2`."""
    m = np.asarray(m, dtype=np.float64)
    return 0.5 * (m + m.T)


def robust_spd_inverse(S: np.ndarray, rel_floor: float = 1e-12) -> Tuple[np.ndarray, bool]:
    r"""
    Invert a symmetric (ideally SPD) matrix with an eigenvalue floor.

    Tries a Cholesky factorisation first, inverting through two triangular
    solves. When that fails the spectrum is clamped to
    :math:`\max(w_i,\; w_\max\,\epsilon_{rel})` before inversion.

    Parameters
    ----------
    S : ndarray, shape (n, n)
        Symmetric matrix.
    rel_floor : float, optional
        Relative eigenvalue floor used on the fallback path.

    Returns
    -------
    S_inv : ndarray, shape (n, n)
        Symmetric inverse.
    regular : bool
        ``False`` when the eigenvalue floor had to be applied, i.e. ``S`` was
        singular or not positive definite.

    Raises
    ------
    numpy.linalg.LinAlgError
        If ``S`` is not finite or has no positive eigenvalue.
    """
    S = symmetrize(S)
    if not np.all(np.isfinite(S)):
        raise np.linalg.LinAlgError("matrix has non-finite entries")
    n = S.shape[0]
    try:
        L = np.linalg.cholesky(S)
        Linv = np.linalg.solve(L, np.eye(n))
        return symmetrize(Linv.T @ Linv), True
    except np.linalg.LinAlgError:
        pass
    w, V = np.linalg.eigh(S)
    w_max = float(np.max(w))
    if w_max <= 0.0:
        raise np.linalg.LinAlgError("matrix has no positive eigenvalue")
    w = np.clip(w, w_max * rel_floor, None)
    return symmetrize((V / w) @ V.T), False


@njit(cache=True)
def bethe_bloch_solid(bg: float) -> float:
    r"""
    Mean energy loss :math:`\langle dE/dx\rangle` in GeV·cm²/g for a solid.

    Bethe-Bloch with density-effect correction, parametrised for silicon
    (:math:`\rho=2.33`, :math:`I=173` eV, :math:`Z/A=0.49848`,
    :math:`x_0=0.2`, :math:`x_1=3`).

    Parameters
    ----------
    bg : float
        :math:`\beta\gamma = p/m`.
    """
    mK = 0.307075e-3
    me = 0.511e-3
    rho = 2.33
    x0 = 0.2
    x1 = 3.0
    mI = 173e-9
    mZA = 0.49848
    bg2 = bg * bg
    beta2 = bg2 / (1.0 + bg2)
    max_t = 2.0 * me * bg2
    d2 = 0.0
    x = math.log(bg)
    lhwI = math.log(28.816 * 1e-9 * math.sqrt(rho * mZA) / mI)
    if x > x1:
        d2 = lhwI + x - 0.5
    elif x > x0:
        r = (x1 - x) / (x1 - x0)
        d2 = lhwI + x - 0.5 + (0.5 - lhwI - x0) * r * r * r
    return mK * mZA * (1.0 + bg2) / bg2 * (0.5 * math.log(2.0 * me * bg2 * max_t / (mI * mI)) - beta2 - d2)
