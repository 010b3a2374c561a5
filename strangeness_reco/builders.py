from __future__ import annotations

import abc
import logging
import math
from dataclasses import dataclass, replace
from enum import Enum
from typing import Any, Dict, Optional, Tuple

import numpy as np

from strangeness_reco.conditions import RunContext
from strangeness_reco.covariance import CandidateCovariance, CovariancePropagator
from strangeness_reco.data import DaughterTrack
from strangeness_reco.errors import PropagationDivergence
from strangeness_reco.kinematics import (
    CASCADE_HYPOTHESES,
    LAMBDA_MASS,
    V0_HYPOTHESES,
    armenteros,
    cos_pointing_angle,
    decay_length,
    masses_for,
)
from strangeness_reco.selection import CASCADE_STAGES, V0_STAGES, CutConfiguration, SelectionCascade
from strangeness_reco.solver import ClosestApproachSolver, SolveResult, SolverConfig
from strangeness_reco.track import TrackState

logger = logging.getLogger(__name__)

__all__ = [
    "BuildStatus",
    "BuildOutcome",
    "Vertex3D",
    "V0Candidate",
    "CascadeCandidate",
    "V0Builder",
    "CascadeBuilder",
]


class BuildStatus(Enum):
    """Why a candidate evaluation ended."""
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    FAILED_SOLVE = "failed_solve"
    EXCEPTION = "exception"


@dataclass(frozen=True)
class BuildOutcome:
    """
    Tagged result of one candidate evaluation.

    ``stage`` is the gate that stopped the candidate, or the last gate when
    it was accepted.
    """
    accepted: bool
    stage: str
    status: BuildStatus
    candidate: Optional[Any] = None


@dataclass(frozen=True, eq=False)
class Vertex3D:
    """
    Decay vertex with its packed ``(xx, yx, yy, zx, zy, zz)`` covariance.

    The covariance is all NaN when it was not computed.
    """
    position: np.ndarray
    covariance: np.ndarray

    @property
    def radius(self) -> float:
        return float(np.hypot(self.position[0], self.position[1]))


def _track_columns(prefix: str, t: TrackState) -> Dict[str, float]:
    return {
        f"{prefix}_x": t.x, f"{prefix}_alpha": t.alpha, f"{prefix}_y": t.y, f"{prefix}_z": t.z,
        f"{prefix}_snp": t.snp, f"{prefix}_tgl": t.tgl, f"{prefix}_signed1Pt": t.q2pt,
    }


def _covariance_columns(cov: Optional[CandidateCovariance]) -> Dict[str, Any]:
    pos = cov.position if cov is not None else np.full(6, np.nan)
    mom = cov.momentum if cov is not None else np.full(6, np.nan)
    out: Dict[str, Any] = {f"position_cov_{i}": float(v) for i, v in enumerate(pos)}
    out.update({f"momentum_cov_{i}": float(v) for i, v in enumerate(mom)})
    out["covariance_quality"] = cov.quality.value if cov is not None else None
    return out


@dataclass(frozen=True, eq=False)
class V0Candidate:
    r"""
    Accepted two-prong decay candidate.

    Momenta are global and taken at the vertex; ``masses`` holds the
    invariant mass under each of :data:`~strangeness_reco.kinematics.V0_HYPOTHESES`.
    """
    collision_index: int
    pos_index: int
    neg_index: int
    pos_track: TrackState
    neg_track: TrackState
    vertex: Vertex3D
    p_pos: np.ndarray
    p_neg: np.ndarray
    dca_daughters: float
    dca_pos_to_pv: float
    dca_neg_to_pv: float
    cospa: float
    radius: float
    decay_length: float
    masses: Dict[str, float]
    armenteros_alpha: float
    qt: float
    chi2: float
    covariance: Optional[CandidateCovariance] = None

    @property
    def momentum(self) -> np.ndarray:
        return self.p_pos + self.p_neg

    @property
    def pt(self) -> float:
        p = self.momentum
        return float(np.hypot(p[0], p[1]))

    def parent_track(self, pid_mass: float = LAMBDA_MASS) -> TrackState:
        """
        Neutral track of the V0 itself, starting at its vertex.

        The errors come from :meth:`CandidateCovariance.full6`, which is
        block diagonal: position-momentum correlations of the V0 are not
        carried into the cascade solve.
        """
        cov6 = self.covariance.full6() if self.covariance is not None else None
        return TrackState.from_cartesian(self.vertex.position, self.momentum, cov6, charge=0, pid_mass=pid_mass)

    def to_record(self, include_covariance: bool = False) -> Dict[str, Any]:
        x, y, z = self.vertex.position
        px, py, pz = self.momentum
        rec: Dict[str, Any] = {
            "collision_index": self.collision_index, "pos_index": self.pos_index, "neg_index": self.neg_index,
            "x": x, "y": y, "z": z, "px": px, "py": py, "pz": pz, "pt": self.pt,
            "px_pos": self.p_pos[0], "py_pos": self.p_pos[1], "pz_pos": self.p_pos[2],
            "px_neg": self.p_neg[0], "py_neg": self.p_neg[1], "pz_neg": self.p_neg[2],
            "dca_daughters": self.dca_daughters, "dca_pos_to_pv": self.dca_pos_to_pv,
            "dca_neg_to_pv": self.dca_neg_to_pv, "cospa": self.cospa, "radius": self.radius,
            "decay_length": self.decay_length, "armenteros_alpha": self.armenteros_alpha, "qt": self.qt,
            "chi2": self.chi2,
        }
        rec.update({f"mass_{k}": v for k, v in self.masses.items()})
        rec.update(_track_columns("pos", self.pos_track))
        rec.update(_track_columns("neg", self.neg_track))
        if include_covariance:
            rec.update(_covariance_columns(self.covariance))
        return rec


@dataclass(frozen=True, eq=False)
class CascadeCandidate:
    """Accepted V0 + bachelor candidate; ``charge`` is the bachelor charge."""
    collision_index: int
    v0_index: int
    bachelor_index: int
    v0: V0Candidate
    v0_track: TrackState
    bachelor_track: TrackState
    vertex: Vertex3D
    p_v0: np.ndarray
    p_bachelor: np.ndarray
    charge: int
    dca_daughters: float
    dca_bach_to_pv: float
    cospa: float
    radius: float
    decay_length: float
    masses: Dict[str, float]
    chi2: float
    covariance: Optional[CandidateCovariance] = None

    @property
    def momentum(self) -> np.ndarray:
        return self.p_v0 + self.p_bachelor

    @property
    def pt(self) -> float:
        p = self.momentum
        return float(np.hypot(p[0], p[1]))

    def to_record(self, include_covariance: bool = False) -> Dict[str, Any]:
        x, y, z = self.vertex.position
        px, py, pz = self.momentum
        rec: Dict[str, Any] = {
            "collision_index": self.collision_index, "v0_index": self.v0_index,
            "bachelor_index": self.bachelor_index, "pos_index": self.v0.pos_index, "neg_index": self.v0.neg_index,
            "charge": self.charge, "x": x, "y": y, "z": z, "px": px, "py": py, "pz": pz, "pt": self.pt,
            "dca_daughters": self.dca_daughters, "dca_bach_to_pv": self.dca_bach_to_pv,
            "dca_v0_daughters": self.v0.dca_daughters, "cospa": self.cospa, "v0_cospa": self.v0.cospa,
            "radius": self.radius, "v0_radius": self.v0.radius, "decay_length": self.decay_length,
            "mass_Lambda": self.v0.masses["Lambda" if self.charge < 0 else "AntiLambda"], "chi2": self.chi2,
        }
        rec.update({f"mass_{k}": v for k, v in self.masses.items()})
        rec.update(_track_columns("bach", self.bachelor_track))
        if include_covariance:
            rec.update(_covariance_columns(self.covariance))
        return rec


class _TwoBodyBuilder(abc.ABC):
    r"""
    Shared machinery of the two-body builders.

    Owns one :class:`ClosestApproachSolver` (never shared between threads),
    one :class:`SelectionCascade`, and the :class:`CovariancePropagator`.
    The metric toggles of ``cuts`` (``use_abs_dca``, ``use_weighted_pca``)
    override the ones of ``solver_config``.

    The solve is the only local exception boundary: linear-algebra and
    floating-point errors raised inside it are counted in
    ``selection.exceptions``, logged, and turned into a rejection.
    """

    STAGES: Tuple[str, ...] = ()

    def __init__(self,
                 cuts: Optional[CutConfiguration] = None,
                 solver_config: Optional[SolverConfig] = None,
                 covariance: Optional[CovariancePropagator] = None):
        self.cuts = cuts if cuts is not None else CutConfiguration()
        base = solver_config if solver_config is not None else SolverConfig()
        self.solver = ClosestApproachSolver(replace(base, use_abs_dca=self.cuts.use_abs_dca,
                                                    use_weighted_pca=self.cuts.use_weighted_pca))
        self.selection = SelectionCascade(self.STAGES)
        self.covariance = covariance if covariance is not None else CovariancePropagator()
        self.log = logging.getLogger(self.__class__.__name__)

    def reset(self) -> None:
        self.selection.reset()

    def _reject(self, stage: str, status: BuildStatus = BuildStatus.REJECTED) -> BuildOutcome:
        return BuildOutcome(False, stage, status, None)

    def _quality(self, d: DaughterTrack) -> bool:
        c = self.cuts
        if c.require_tpc_refit and not d.tpc_refit:
            return False
        if d.n_crossed_rows < c.min_crossed_rows:
            return False
        return abs(d.track.eta) <= c.max_daughter_eta

    def _impact_parameter(self, d: DaughterTrack, pv: np.ndarray, bz: float) -> Optional[float]:
        """Transverse DCA to the primary vertex, ``None`` if it cannot be computed."""
        if d.dca_xy is not None:
            return float(d.dca_xy)
        try:
            return d.track.dca_xy_to(pv, bz)
        except PropagationDivergence as exc:
            self.log.debug("track %d: no DCA to PV (%s)", d.index, exc)
            return None

    def _solve(self, t0: TrackState, t1: TrackState, context: RunContext) -> Optional[SolveResult]:
        material = context.material if self.cuts.use_material_correction else None
        try:
            return self.solver.process(t0, t1, context.bz, material)
        except (np.linalg.LinAlgError, FloatingPointError, ZeroDivisionError, ValueError) as exc:
            self.selection.exceptions += 1
            self.log.error("Numerical exception in closest-approach solve: %s", exc)
            return None

    def _run_solve(self, t0: TrackState, t1: TrackState, context: RunContext):
        """Solve gate; returns ``(approach, outcome_if_rejected)``."""
        result = self._solve(t0, t1, context)
        if result is None:
            return None, self._reject("solve", BuildStatus.EXCEPTION)
        if not result.ok:
            self.selection.failed_solves += 1
            return None, self._reject("solve", BuildStatus.FAILED_SOLVE)
        self.selection.passed("solve")
        return result.approach, None

    @abc.abstractmethod
    def build(self, *args, **kwargs) -> BuildOutcome:
        ...


class V0Builder(_TwoBodyBuilder):
    r"""
    Two-prong (V0) candidate builder.

    Gates, in order: ``all`` → ``quality`` → ``impact_parameter`` → ``solve``
    → ``dca_daughters`` → ``cospa`` → ``radius``. Each gate increments its
    counter on pass; the first failing gate ends the evaluation. The
    ``quality`` gate also requires a positive ``pos`` and a negative ``neg``
    daughter, since the mass hypotheses are ordered that way.

    Parameters
    ----------
    cuts : CutConfiguration, optional
    solver_config : SolverConfig, optional
    covariance : CovariancePropagator, optional
    """

    STAGES = V0_STAGES

    def build(self,
              pv: np.ndarray,
              pos: DaughterTrack,
              neg: DaughterTrack,
              context: RunContext,
              collision_index: int = -1,
              with_covariance: Optional[bool] = None) -> BuildOutcome:
        """
        Evaluate one positive/negative daughter pair against ``pv``.

        ``with_covariance`` defaults to ``cuts.create_covariance``.
        """
        c, sel = self.cuts, self.selection
        pv = np.asarray(pv, dtype=np.float64)
        sel.passed("all")

        if not (pos.track.charge > 0 > neg.track.charge and self._quality(pos) and self._quality(neg)):
            return self._reject("quality")
        sel.passed("quality")

        dca_pos = self._impact_parameter(pos, pv, context.bz)
        dca_neg = self._impact_parameter(neg, pv, context.bz)
        if dca_pos is None or dca_neg is None or abs(dca_pos) < c.dca_pos_to_pv or abs(dca_neg) < c.dca_neg_to_pv:
            return self._reject("impact_parameter")
        sel.passed("impact_parameter")

        approach, rejected = self._run_solve(pos.track, neg.track, context)
        if rejected is not None:
            return rejected

        if approach.dca > c.dca_v0_daughters:
            return self._reject("dca_daughters")
        sel.passed("dca_daughters")

        t_pos, t_neg = approach.tracks
        p_pos, p_neg = t_pos.pxpypz(), t_neg.pxpypz()
        cospa = cos_pointing_angle(pv, approach.vertex, p_pos + p_neg)
        if cospa < c.v0_cospa:
            return self._reject("cospa")
        sel.passed("cospa")

        radius = float(np.hypot(approach.vertex[0], approach.vertex[1]))
        if radius < c.v0_radius:
            return self._reject("radius")
        sel.passed("radius")

        want_cov = c.covariance_enabled if with_covariance is None else bool(with_covariance)
        cov = self.covariance.propagate(approach) if want_cov else None
        arm_alpha, qt = armenteros(p_pos, p_neg)
        candidate = V0Candidate(
            collision_index=int(collision_index), pos_index=pos.index, neg_index=neg.index,
            pos_track=t_pos, neg_track=t_neg,
            vertex=Vertex3D(approach.vertex, cov.position if cov is not None else np.full(6, np.nan)),
            p_pos=p_pos, p_neg=p_neg, dca_daughters=approach.dca,
            dca_pos_to_pv=dca_pos, dca_neg_to_pv=dca_neg, cospa=cospa, radius=radius,
            decay_length=decay_length(pv, approach.vertex),
            masses=masses_for((p_pos, p_neg), V0_HYPOTHESES),
            armenteros_alpha=arm_alpha, qt=qt, chi2=approach.chi2, covariance=cov,
        )
        return BuildOutcome(True, self.STAGES[-1], BuildStatus.ACCEPTED, candidate)


class CascadeBuilder(_TwoBodyBuilder):
    r"""
    V0 + bachelor (cascade) candidate builder.

    Gates: ``all`` → ``v0`` (an accepted V0 with covariance) →
    ``v0_mass_window`` (:math:`|m_{p\pi} - m_\Lambda|` for the hypothesis
    fixed by the bachelor charge: negative → Λ, positive → anti-Λ) →
    ``quality`` → ``impact_parameter`` → ``solve`` (neutral V0 track against
    the bachelor) → ``dca_daughters`` → ``cospa`` → ``radius``.
    """

    STAGES = CASCADE_STAGES

    def build(self,
              pv: np.ndarray,
              v0: Optional[V0Candidate],
              bachelor: DaughterTrack,
              context: RunContext,
              collision_index: int = -1,
              v0_index: int = -1) -> BuildOutcome:
        c, sel = self.cuts, self.selection
        pv = np.asarray(pv, dtype=np.float64)
        sel.passed("all")

        if v0 is None or v0.covariance is None:
            return self._reject("v0")
        sel.passed("v0")

        charge = bachelor.track.charge
        lambda_mass = v0.masses["Lambda" if charge < 0 else "AntiLambda"]
        if abs(lambda_mass - LAMBDA_MASS) > c.v0_mass_window:
            return self._reject("v0_mass_window")
        sel.passed("v0_mass_window")

        if not self._quality(bachelor):
            return self._reject("quality")
        sel.passed("quality")

        dca_bach = self._impact_parameter(bachelor, pv, context.bz)
        if dca_bach is None or abs(dca_bach) < c.dca_bach_to_pv:
            return self._reject("impact_parameter")
        sel.passed("impact_parameter")

        try:
            v0_track = v0.parent_track()
        except PropagationDivergence as exc:
            self.log.debug("V0 %d has no usable parent track: %s", v0_index, exc)
            sel.failed_solves += 1
            return self._reject("solve", BuildStatus.FAILED_SOLVE)
        approach, rejected = self._run_solve(v0_track, bachelor.track, context)
        if rejected is not None:
            return rejected

        if approach.dca > c.dca_casc_daughters:
            return self._reject("dca_daughters")
        sel.passed("dca_daughters")

        t_v0, t_bach = approach.tracks
        p_v0, p_bach = t_v0.pxpypz(), t_bach.pxpypz()
        cospa = cos_pointing_angle(pv, approach.vertex, p_v0 + p_bach)
        if cospa < c.casc_cospa:
            return self._reject("cospa")
        sel.passed("cospa")

        radius = float(np.hypot(approach.vertex[0], approach.vertex[1]))
        if radius < c.casc_radius:
            return self._reject("radius")
        sel.passed("radius")

        cov = self.covariance.propagate(approach) if c.covariance_enabled else None
        candidate = CascadeCandidate(
            collision_index=int(collision_index), v0_index=int(v0_index), bachelor_index=bachelor.index,
            v0=v0, v0_track=t_v0, bachelor_track=t_bach,
            vertex=Vertex3D(approach.vertex, cov.position if cov is not None else np.full(6, np.nan)),
            p_v0=p_v0, p_bachelor=p_bach, charge=int(math.copysign(1, charge)) if charge else 0,
            dca_daughters=approach.dca, dca_bach_to_pv=dca_bach, cospa=cospa, radius=radius,
            decay_length=decay_length(pv, approach.vertex),
            masses=masses_for((p_v0, p_bach), CASCADE_HYPOTHESES),
            chi2=approach.chi2, covariance=cov,
        )
        return BuildOutcome(True, self.STAGES[-1], BuildStatus.ACCEPTED, candidate)
