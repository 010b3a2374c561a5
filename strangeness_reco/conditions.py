from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional, Protocol, Set, runtime_checkable

from strangeness_reco.errors import ConfigurationError, MissingConditionsError
from strangeness_reco.material import CylindricalMaterialLUT, MaterialBudgetService

logger = logging.getLogger(__name__)

__all__ = [
    "RunConditions",
    "ConditionsSource",
    "StaticConditionsSource",
    "RunContext",
    "RunContextProvider",
    "field_from_l3_current",
]


def field_from_l3_current(l3_current: float) -> float:
    """Nominal solenoid field (kG) from the L3 magnet current (A): 30 kA ↔ 5 kG."""
    return float(round(5.0 * l3_current / 30000.0))


@dataclass(frozen=True)
class RunConditions:
    """
    Conditions record of one run as delivered by a conditions source.

    Either ``nominal_field`` (kG) or ``l3_current`` (A) determines the field.
    """
    run_number: int
    nominal_field: Optional[float] = None
    l3_current: Optional[float] = None
    material: Optional[MaterialBudgetService] = None

    def field(self) -> Optional[float]:
        if self.nominal_field is not None:
            return float(self.nominal_field)
        if self.l3_current is not None:
            return field_from_l3_current(self.l3_current)
        return None


@runtime_checkable
class ConditionsSource(Protocol):
    """Fetches the conditions of a run, ``None`` when it has none."""

    def fetch(self, run_number: int) -> Optional[RunConditions]:
        ...


class StaticConditionsSource:
    """
    In-memory :class:`ConditionsSource`.

    Parameters
    ----------
    runs : mapping of int to RunConditions
    default : RunConditions, optional
        Returned (re-labelled) for runs missing from ``runs``.
    """

    def __init__(self, runs: Optional[Mapping[int, RunConditions]] = None, default: Optional[RunConditions] = None):
        self.runs: Dict[int, RunConditions] = dict(runs or {})
        self.default = default
        self.n_fetches = 0

    def fetch(self, run_number: int) -> Optional[RunConditions]:
        self.n_fetches += 1
        cond = self.runs.get(int(run_number))
        if cond is None and self.default is not None:
            return RunConditions(int(run_number), self.default.nominal_field, self.default.l3_current,
                                 self.default.material)
        return cond

    @classmethod
    def from_mapping(cls, cfg: Optional[Mapping[str, Any]]) -> "StaticConditionsSource":
        """
        Build from the ``conditions`` config section::

            {"runs": {"544122": {"bz": -5.0}, "544123": {"l3_current": 30000}},
             "default": {"bz": 5.0},
             "material_layers": [{"radius": 2.3, "x2x0": 0.004, "xrho": 0.08}, ...]}

        ``material_layers`` builds a :class:`CylindricalMaterialLUT` shared by
        every run.
        """
        cfg = dict(cfg or {})
        unknown = sorted(set(cfg) - {"runs", "default", "material_layers"})
        if unknown:
            raise ConfigurationError(f"unknown conditions settings: {', '.join(unknown)}")
        material = None
        if cfg.get("material_layers"):
            material = CylindricalMaterialLUT.from_records(cfg["material_layers"])

        def _one(run: int, entry: Mapping[str, Any]) -> RunConditions:
            extra = sorted(set(entry) - {"bz", "l3_current"})
            if extra:
                raise ConfigurationError(f"unknown settings for run {run}: {', '.join(extra)}")
            return RunConditions(run, entry.get("bz"), entry.get("l3_current"), material)

        runs = {int(k): _one(int(k), v) for k, v in (cfg.get("runs") or {}).items()}
        default = _one(0, cfg["default"]) if cfg.get("default") else None
        return cls(runs, default)


@dataclass(frozen=True)
class RunContext:
    """Run-scoped inputs of the builders: field (kG) and material handle."""
    run_number: int
    bz: float
    material: Optional[MaterialBudgetService] = None


class RunContextProvider:
    r"""
    Resolve and cache the :class:`RunContext` of the current run.

    The source is queried only when the run number changes. A configured
    ``bz_override`` replaces the field lookup; without it a run with no field
    information is fatal (:class:`MissingConditionsError`). Material is
    attached only when ``use_material`` is set; if the source has none for
    the run a single WARNING is logged and propagation stays field-only.

    Parameters
    ----------
    source : ConditionsSource, optional
    bz_override : float, optional
        Field (kG) used for every run.
    use_material : bool, optional
    """

    def __init__(self,
                 source: Optional[ConditionsSource] = None,
                 *,
                 bz_override: Optional[float] = None,
                 use_material: bool = False):
        self.source = source
        self.bz_override = bz_override
        self.use_material = bool(use_material)
        self.n_fetches = 0
        self._lock = threading.Lock()
        self._current: Optional[RunContext] = None
        self._warned_material: Set[int] = set()

    def context_for(self, run_number: int) -> RunContext:
        run_number = int(run_number)
        with self._lock:
            if self._current is not None and self._current.run_number == run_number:
                return self._current
            ctx = self._resolve(run_number)
            self._current = ctx
            return ctx

    def _resolve(self, run_number: int) -> RunContext:
        cond = None
        if self.source is not None and (self.bz_override is None or self.use_material):
            self.n_fetches += 1
            cond = self.source.fetch(run_number)

        if self.bz_override is not None:
            bz = float(self.bz_override)
            logger.info("Run %d: using field override %.3f kG", run_number, bz)
        else:
            bz = cond.field() if cond is not None else None
            if bz is None:
                raise MissingConditionsError(f"no magnetic field for run {run_number} and no override configured")
            logger.info("Run %d: fetched magnetic field %.3f kG", run_number, bz)

        material = None
        if self.use_material:
            material = cond.material if cond is not None else None
            if material is None and run_number not in self._warned_material:
                self._warned_material.add(run_number)
                logger.warning("Run %d: material correction requested but no material lookup available; "
                               "propagating with the field only", run_number)
        return RunContext(run_number=run_number, bz=bz, material=material)
