from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Dict, Sequence, Tuple

import numpy as np

__all__ = [
    "ELECTRON_MASS",
    "PION_MASS",
    "KAON_MASS",
    "PROTON_MASS",
    "LAMBDA_MASS",
    "K0S_MASS",
    "XI_MASS",
    "OMEGA_MASS",
    "MassHypothesis",
    "V0_HYPOTHESES",
    "CASCADE_HYPOTHESES",
    "invariant_mass",
    "cos_pointing_angle",
    "armenteros",
    "decay_length",
    "masses_for",
]

# GeV/c^2
ELECTRON_MASS = 0.000510998950
PION_MASS = 0.13957039
KAON_MASS = 0.493677
PROTON_MASS = 0.93827208816
LAMBDA_MASS = 1.115683
K0S_MASS = 0.497611
XI_MASS = 1.32171
OMEGA_MASS = 1.67245


@dataclass(frozen=True)
class MassHypothesis:
    """Daughter mass assignment ``(first, second)`` for a named parent."""
    name: str
    masses: Tuple[float, float]


# (positive, negative) daughters
V0_HYPOTHESES: Tuple[MassHypothesis, ...] = (
    MassHypothesis("K0Short", (PION_MASS, PION_MASS)),
    MassHypothesis("Lambda", (PROTON_MASS, PION_MASS)),
    MassHypothesis("AntiLambda", (PION_MASS, PROTON_MASS)),
    MassHypothesis("Gamma", (ELECTRON_MASS, ELECTRON_MASS)),
)

# (V0, bachelor)
CASCADE_HYPOTHESES: Tuple[MassHypothesis, ...] = (
    MassHypothesis("Xi", (LAMBDA_MASS, PION_MASS)),
    MassHypothesis("Omega", (LAMBDA_MASS, KAON_MASS)),
)


def invariant_mass(momenta: Sequence[np.ndarray], masses: Sequence[float]) -> float:
    r"""
    Invariant mass of a set of daughters.

    .. math::

        m^2 = \Big(\sum_i E_i\Big)^2 - \Big|\sum_i \vec p_i\Big|^2,
        \qquad E_i = \sqrt{|\vec p_i|^2 + m_i^2}.

    Negative :math:`m^2` from rounding is clamped to zero.
    """
    e_sum = 0.0
    p_sum = np.zeros(3)
    for p, m in zip(momenta, masses):
        p = np.asarray(p, dtype=np.float64)
        e_sum += math.sqrt(float(p @ p) + m * m)
        p_sum += p
    return math.sqrt(max(e_sum * e_sum - float(p_sum @ p_sum), 0.0))


def masses_for(momenta: Sequence[np.ndarray], hypotheses: Sequence[MassHypothesis]) -> Dict[str, float]:
    """Invariant mass under each hypothesis, keyed by hypothesis name."""
    return {h.name: invariant_mass(momenta, h.masses) for h in hypotheses}


def cos_pointing_angle(primary: np.ndarray, vertex: np.ndarray, momentum: np.ndarray) -> float:
    r"""
    Cosine of the angle between the flight line and the momentum.

    .. math::

        \cos\theta_{PA} = \frac{(\vec v - \vec p_{PV})\cdot\vec p}
                               {|\vec v - \vec p_{PV}|\,|\vec p|}

    Returns ``-1.0`` when either vector has zero length; the result is always
    in ``[-1, 1]``.
    """
    d = np.asarray(vertex, dtype=np.float64) - np.asarray(primary, dtype=np.float64)
    p = np.asarray(momentum, dtype=np.float64)
    norm = float(np.linalg.norm(d) * np.linalg.norm(p))
    if not norm > 0.0 or not math.isfinite(norm):
        return -1.0
    return float(np.clip(float(d @ p) / norm, -1.0, 1.0))


def armenteros(p_pos: np.ndarray, p_neg: np.ndarray) -> Tuple[float, float]:
    r"""
    Armenteros-Podolanski variables :math:`(\alpha, q_T)`.

    With :math:`\vec P = \vec p_+ + \vec p_-`,
    :math:`p_L^\pm = \vec p_\pm\cdot\hat P` and
    :math:`q_T = |\vec p_+ \times \hat P|`:

    .. math::

        \alpha = \frac{p_L^+ - p_L^-}{p_L^+ + p_L^-}.
    """
    p_pos = np.asarray(p_pos, dtype=np.float64)
    p_neg = np.asarray(p_neg, dtype=np.float64)
    mother = p_pos + p_neg
    pm = float(np.linalg.norm(mother))
    if pm == 0.0:
        return 0.0, 0.0
    u = mother / pm
    pl_pos = float(p_pos @ u)
    pl_neg = float(p_neg @ u)
    qt = float(np.linalg.norm(np.cross(p_pos, u)))
    denom = pl_pos + pl_neg
    alpha = (pl_pos - pl_neg) / denom if denom != 0.0 else 0.0
    return alpha, qt


def decay_length(primary: np.ndarray, vertex: np.ndarray) -> float:
    """3D distance from the primary to the decay vertex."""
    return float(np.linalg.norm(np.asarray(vertex, dtype=np.float64) - np.asarray(primary, dtype=np.float64)))
