from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Iterable, List, Mapping, Optional, Protocol, Sequence, runtime_checkable

import numpy as np

logger = logging.getLogger(__name__)

__all__ = [
    "MaterialCorrection",
    "MaterialBudgetService",
    "MaterialLayer",
    "CylindricalMaterialLUT",
]


@dataclass(frozen=True)
class MaterialCorrection:
    r"""
    Effective material traversed along one propagation step.

    Attributes
    ----------
    x2x0 : float
        Thickness in radiation lengths (drives multiple scattering).
    xrho : float
        Areal density :math:`\int\rho\,dl` in g/cm² (drives energy loss).
    """
    x2x0: float
    xrho: float


@runtime_checkable
class MaterialBudgetService(Protocol):
    """
    Opaque material lookup consumed by track propagation.

    Implementations return the material crossed on the straight segment
    ``start -> end`` (global coordinates, cm), or ``None`` when no correction
    is available for it.
    """

    def query(self, start: np.ndarray, end: np.ndarray) -> Optional[MaterialCorrection]:
        ...


@dataclass(frozen=True)
class MaterialLayer:
    """Thin cylindrical shell of material at transverse ``radius`` (cm)."""
    radius: float
    x2x0: float
    xrho: float


class CylindricalMaterialLUT:
    r"""
    Material lookup built from thin cylindrical layers around the beam axis.

    A segment crossing the shell at radius :math:`R` picks up that layer's
    ``x2x0``/``xrho`` scaled by the inclination factor
    :math:`|\Delta\vec r| / |\Delta r_T|` of the segment.

    Parameters
    ----------
    layers : iterable of MaterialLayer
        Layers in any order; stored sorted by radius.
    """

    __slots__ = ("layers", "_radii")

    def __init__(self, layers: Iterable[MaterialLayer]):
        self.layers: List[MaterialLayer] = sorted(layers, key=lambda l: l.radius)
        self._radii = np.array([l.radius for l in self.layers], dtype=np.float64)

    @classmethod
    def from_records(cls, records: Sequence[Mapping[str, float]]) -> "CylindricalMaterialLUT":
        """Build from ``[{'radius': .., 'x2x0': .., 'xrho': ..}, ...]``."""
        return cls(MaterialLayer(float(r["radius"]), float(r["x2x0"]), float(r["xrho"])) for r in records)

    def query(self, start: np.ndarray, end: np.ndarray) -> Optional[MaterialCorrection]:
        start = np.asarray(start, dtype=np.float64)
        end = np.asarray(end, dtype=np.float64)
        r0, r1 = float(np.hypot(start[0], start[1])), float(np.hypot(end[0], end[1]))
        lo, hi = min(r0, r1), max(r0, r1)
        crossed = (self._radii > lo) & (self._radii <= hi)
        if not np.any(crossed):
            return None
        dr = hi - lo
        inclination = float(np.linalg.norm(end - start)) / dr if dr > 0.0 else 1.0
        x2x0 = sum(self.layers[i].x2x0 for i in np.flatnonzero(crossed)) * inclination
        xrho = sum(self.layers[i].xrho for i in np.flatnonzero(crossed)) * inclination
        return MaterialCorrection(x2x0=x2x0, xrho=xrho)

    def __len__(self) -> int:
        return len(self.layers)

    def __repr__(self) -> str:
        return f"CylindricalMaterialLUT(n_layers={len(self.layers)})"
