from __future__ import annotations

import logging
import threading
from collections import OrderedDict
from dataclasses import dataclass, field, fields, replace
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Union

import numpy as np

from strangeness_reco.errors import ConfigurationError

logger = logging.getLogger(__name__)

__all__ = [
    "V0_STAGES",
    "CASCADE_STAGES",
    "FLOOR",
    "CEILING",
    "REQUEST",
    "QUALITY",
    "STATIC",
    "SelectionCascade",
    "CutConfiguration",
    "CutRequirement",
    "RequirementRegistry",
    "SelectionNegotiator",
    "derive_loosest_config",
    "OPTION_ALIASES",
]

V0_STAGES = ("all", "quality", "impact_parameter", "solve", "dca_daughters", "cospa", "radius")
CASCADE_STAGES = ("all", "v0", "v0_mass_window", "quality", "impact_parameter", "solve",
                  "dca_daughters", "cospa", "radius")


class SelectionCascade:
    r"""
    Ordered, counted selection gates.

    Each gate has an ``int64`` pass counter. Because every stage only sees
    candidates that passed the previous one, the counters are non-increasing
    along the stage list. Besides the gates the cascade tallies

    - ``exceptions``: numerical exceptions caught around the solve,
    - ``failed_solves``: solves that ended without a candidate,
    - ``collisions``: collisions seen in the processing unit.

    Parameters
    ----------
    stages : sequence of str
        Gate names in evaluation order.
    """

    __slots__ = ("stages", "_index", "counts", "exceptions", "failed_solves", "collisions")

    def __init__(self, stages: Sequence[str]):
        stages = tuple(stages)
        if len(set(stages)) != len(stages):
            raise ValueError(f"duplicate stage names in {stages}")
        self.stages = stages
        self._index = {name: i for i, name in enumerate(stages)}
        self.counts = np.zeros(len(stages), dtype=np.int64)
        self.exceptions = 0
        self.failed_solves = 0
        self.collisions = 0

    def passed(self, stage: str) -> None:
        self.counts[self._index[stage]] += 1

    def count(self, stage: str) -> int:
        return int(self.counts[self._index[stage]])

    def reset(self) -> None:
        self.counts[:] = 0
        self.exceptions = 0
        self.failed_solves = 0
        self.collisions = 0

    def snapshot(self) -> "OrderedDict[str, int]":
        """Per-stage counters in stage order."""
        return OrderedDict((name, int(c)) for name, c in zip(self.stages, self.counts))

    def is_monotonic(self) -> bool:
        return bool(np.all(self.counts[:-1] >= self.counts[1:]))

    def merge(self, other: "SelectionCascade") -> None:
        """Add another cascade's counters (same stage list) into this one."""
        if other.stages != self.stages:
            raise ValueError("cannot merge cascades with different stages")
        self.counts += other.counts
        self.exceptions += other.exceptions
        self.failed_solves += other.failed_solves
        self.collisions += other.collisions

    def __repr__(self) -> str:
        body = ", ".join(f"{k}={v}" for k, v in self.snapshot().items())
        return f"SelectionCascade({body}, exceptions={self.exceptions}, failed_solves={self.failed_solves})"


# Negotiation kinds stored in the field metadata of CutConfiguration.
FLOOR = "floor"        # loosest = smallest declared value
CEILING = "ceiling"    # loosest = largest declared value
REQUEST = "request"    # on if any consumer asks, unless set explicitly
QUALITY = "quality"    # on only if every declaring consumer requires it
STATIC = "static"      # never negotiated


def _cut(default: Any, kind: str) -> Any:
    return field(default=default, metadata={"kind": kind})


@dataclass(frozen=True)
class CutConfiguration:
    """
    Selection thresholds and toggles of the V0 and cascade builders.

    Lengths in cm, masses in GeV/c². Every field carries its negotiation kind
    in ``dataclasses.fields(...)[i].metadata['kind']``.
    """
    # daughter quality
    min_crossed_rows: int = _cut(70, FLOOR)
    require_tpc_refit: bool = _cut(False, QUALITY)
    max_daughter_eta: float = _cut(2.0, CEILING)
    # V0
    dca_pos_to_pv: float = _cut(0.1, FLOOR)
    dca_neg_to_pv: float = _cut(0.1, FLOOR)
    dca_v0_daughters: float = _cut(1.0, CEILING)
    v0_cospa: float = _cut(0.995, FLOOR)
    v0_radius: float = _cut(0.9, FLOOR)
    # cascade
    dca_bach_to_pv: float = _cut(0.1, FLOOR)
    dca_casc_daughters: float = _cut(1.0, CEILING)
    casc_cospa: float = _cut(0.95, FLOOR)
    casc_radius: float = _cut(0.5, FLOOR)
    v0_mass_window: float = _cut(0.01, CEILING)
    # toggles
    create_covariance: Optional[bool] = _cut(None, REQUEST)
    use_material_correction: bool = _cut(False, STATIC)
    use_weighted_pca: bool = _cut(False, STATIC)
    use_abs_dca: bool = _cut(True, STATIC)

    @classmethod
    def kind_of(cls, name: str) -> str:
        for f in fields(cls):
            if f.name == name:
                return f.metadata["kind"]
        raise KeyError(name)

    @classmethod
    def field_names(cls) -> List[str]:
        return [f.name for f in fields(cls)]

    @classmethod
    def from_mapping(cls, cfg: Optional[Mapping[str, Any]]) -> "CutConfiguration":
        """Build from a config section; unknown keys raise :class:`ConfigurationError`."""
        cfg = dict(cfg or {})
        unknown = sorted(set(cfg) - set(cls.field_names()))
        if unknown:
            raise ConfigurationError(f"unknown cut settings: {', '.join(unknown)}")
        return cls(**cfg)

    def to_dict(self) -> Dict[str, Any]:
        return {name: getattr(self, name) for name in self.field_names()}

    @property
    def covariance_enabled(self) -> bool:
        return bool(self.create_covariance)


# conventional option names of downstream consumers -> CutConfiguration fields
OPTION_ALIASES: Dict[str, str] = {
    "v0setting_cospa": "v0_cospa",
    "v0setting_dcav0dau": "dca_v0_daughters",
    "v0setting_dcapostopv": "dca_pos_to_pv",
    "v0setting_dcanegtopv": "dca_neg_to_pv",
    "v0setting_radius": "v0_radius",
    "cascadesetting_cospa": "casc_cospa",
    "cascadesetting_dcacascdau": "dca_casc_daughters",
    "cascadesetting_dcabachtopv": "dca_bach_to_pv",
    "cascadesetting_cascradius": "casc_radius",
    "cascadesetting_v0masswindow": "v0_mass_window",
    "mincrossedrows": "min_crossed_rows",
    "tpcrefit": "require_tpc_refit",
    "createV0CovMats": "create_covariance",
}


@dataclass(frozen=True)
class CutRequirement:
    """
    Partial :class:`CutConfiguration` declared by one consumer.

    ``values`` maps field names to the value the consumer needs; ``None``
    values mean "no opinion".
    """
    consumer: str
    values: Mapping[str, Any]

    def __post_init__(self):
        unknown = sorted(set(self.values) - set(CutConfiguration.field_names()))
        if unknown:
            raise ConfigurationError(f"consumer {self.consumer!r} declares unknown cuts: {', '.join(unknown)}")
        object.__setattr__(self, "values", dict(self.values))

    @classmethod
    def from_options(cls, consumer: str, options: Mapping[str, Any]) -> "CutRequirement":
        """
        Pick the recognised entries out of a consumer's option set.

        Conventional names (``v0setting_cospa``, ``cascadesetting_dcacascdau``,
        ``createV0CovMats``, ...) and plain field names are both accepted;
        unrelated options are ignored.
        """
        names = set(CutConfiguration.field_names())
        values: Dict[str, Any] = {}
        for key, value in options.items():
            target = OPTION_ALIASES.get(key, key if key in names else None)
            if target is None:
                continue
            values[target] = value
        return cls(consumer=consumer, values=values)


def derive_loosest_config(declared: Iterable[Union[CutRequirement, Mapping[str, Any]]],
                          defaults: Optional[CutConfiguration] = None) -> CutConfiguration:
    r"""
    Loosest cuts that satisfy every declared consumer.

    Per field kind:

    - ``floor``: smallest declared value;
    - ``ceiling``: largest declared value;
    - ``request``: ``True`` if any consumer asks for it, unless the static
      value is explicitly set (not ``None``), in which case the static value
      stays;
    - ``quality``: ``True`` only if every declaring consumer requires it;
    - ``static``: the static value; disagreeing consumers are logged at
      WARNING.

    Fields nobody declares keep their static value. With no declarations the
    defaults are returned unchanged.

    Parameters
    ----------
    declared : iterable of CutRequirement or mapping
        Consumer requirements; plain mappings are wrapped anonymously.
    defaults : CutConfiguration, optional
        Static configuration.

    Returns
    -------
    CutConfiguration
    """
    defaults = defaults if defaults is not None else CutConfiguration()
    reqs = [r if isinstance(r, CutRequirement) else CutRequirement(f"consumer{i}", r)
            for i, r in enumerate(declared)]
    if not reqs:
        return defaults

    updates: Dict[str, Any] = {}
    for f in fields(CutConfiguration):
        name, kind = f.name, f.metadata["kind"]
        votes = [(r.consumer, r.values[name]) for r in reqs if r.values.get(name) is not None]
        if not votes:
            continue
        values = [v for _, v in votes]
        static = getattr(defaults, name)
        if kind == FLOOR:
            updates[name] = min(values)
        elif kind == CEILING:
            updates[name] = max(values)
        elif kind == REQUEST:
            if static is None:
                updates[name] = any(bool(v) for v in values)
        elif kind == QUALITY:
            updates[name] = all(bool(v) for v in values)
        elif kind == STATIC:
            dissent = [c for c, v in votes if v != static]
            if dissent:
                logger.warning("%s is not negotiable; keeping %r although %s declared otherwise",
                               name, static, ", ".join(dissent))
    return replace(defaults, **updates)


class RequirementRegistry:
    """
    Shared place where consumers publish their :class:`CutRequirement`.

    A consumer publishing twice replaces its previous declaration.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._requirements: Dict[str, CutRequirement] = {}

    def publish(self, requirement: CutRequirement) -> None:
        with self._lock:
            self._requirements[requirement.consumer] = requirement
        logger.debug("consumer %s declared %s", requirement.consumer, requirement.values)

    def publish_options(self, consumer: str, options: Mapping[str, Any]) -> CutRequirement:
        req = CutRequirement.from_options(consumer, options)
        self.publish(req)
        return req

    def requirements(self) -> List[CutRequirement]:
        with self._lock:
            return list(self._requirements.values())

    def __len__(self) -> int:
        with self._lock:
            return len(self._requirements)


class SelectionNegotiator:
    """
    Derive the run's cuts from the static defaults and the registry.

    Parameters
    ----------
    defaults : CutConfiguration
        Static configuration.
    registry : RequirementRegistry, optional
        Declared consumers; absent or empty means static cuts.
    enabled : bool, optional
        Switch for auto-configuration.
    """

    def __init__(self,
                 defaults: Optional[CutConfiguration] = None,
                 registry: Optional[RequirementRegistry] = None,
                 enabled: bool = True):
        self.defaults = defaults if defaults is not None else CutConfiguration()
        self.registry = registry if registry is not None else RequirementRegistry()
        self.enabled = bool(enabled)

    def negotiate(self) -> CutConfiguration:
        reqs = self.registry.requirements()
        if not self.enabled or not reqs:
            logger.info("No consumer requirements to reconcile; using static cuts.")
            return self.defaults
        cfg = derive_loosest_config(reqs, self.defaults)
        logger.info("Reconciled cuts from %d consumer(s): %s", len(reqs), ", ".join(r.consumer for r in reqs))
        for name in CutConfiguration.field_names():
            before, after = getattr(self.defaults, name), getattr(cfg, name)
            if before != after:
                logger.info("  %-22s %r -> %r", name, before, after)
        return cfg
