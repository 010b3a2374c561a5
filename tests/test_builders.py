import sys
from pathlib import Path
sys.path.append(str(Path(__file__).resolve().parents[1]))

import logging
from dataclasses import replace

import numpy as np
import pytest

from conftest import BZ, make_track, open_cuts
from strangeness_reco.builders import BuildStatus, CascadeBuilder, V0Builder
from strangeness_reco.conditions import RunContext
from strangeness_reco.covariance import CovarianceQuality
from strangeness_reco.data import DaughterTrack
from strangeness_reco.kinematics import LAMBDA_MASS, XI_MASS
from strangeness_reco.solver import SolverConfig

PV = np.zeros(3)
CONTEXT = RunContext(run_number=1, bz=BZ)


def _v0(builder, xi, **kw):
    return builder.build(PV, xi["pos"], xi["neg"], CONTEXT, collision_index=0, **kw)


def test_lambda_is_accepted(xi, cuts):
    builder = V0Builder(cuts)
    out = _v0(builder, xi, with_covariance=True)
    assert out.accepted and out.status is BuildStatus.ACCEPTED and out.stage == "radius"
    v0 = out.candidate
    assert np.allclose(v0.vertex.position, xi["lambda_vertex"], atol=1e-3)
    assert np.allclose(v0.momentum, xi["p_lambda"], atol=1e-6)
    assert v0.masses["Lambda"] == pytest.approx(LAMBDA_MASS, abs=1e-5)
    assert v0.dca_daughters < 1e-3
    assert v0.cospa > cuts.v0_cospa
    assert v0.radius == pytest.approx(np.hypot(*xi["lambda_vertex"][:2]), abs=1e-3)
    assert v0.armenteros_alpha > 0.5
    assert v0.covariance.quality is CovarianceQuality.OK
    assert all(n == 1 for n in builder.selection.snapshot().values())


def test_covariance_follows_the_toggle(xi):
    off = _v0(V0Builder(open_cuts()), xi).candidate
    assert off.covariance is None
    assert np.isnan(off.vertex.covariance).all()
    assert "position_cov_0" not in off.to_record()

    on = _v0(V0Builder(open_cuts(create_covariance=True)), xi).candidate
    rec = on.to_record(include_covariance=True)
    assert rec["covariance_quality"] == "ok"
    assert np.allclose(on.vertex.covariance, on.covariance.position)


def test_xi_is_accepted(xi, cuts):
    v0 = _v0(V0Builder(cuts), xi, with_covariance=True).candidate
    builder = CascadeBuilder(cuts)
    out = builder.build(PV, v0, xi["bachelor"], CONTEXT, collision_index=0, v0_index=0)
    assert out.accepted
    casc = out.candidate
    assert casc.charge == -1
    assert np.allclose(casc.vertex.position, xi["xi_vertex"], atol=1e-3)
    assert casc.masses["Xi"] == pytest.approx(XI_MASS, abs=1e-4)
    assert casc.cospa > 0.999
    rec = casc.to_record()
    assert rec["mass_Lambda"] == pytest.approx(LAMBDA_MASS, abs=1e-5)
    assert rec["v0_index"] == 0 and rec["bachelor_index"] == 2
    assert builder.selection.is_monotonic()
    assert builder.selection.count("radius") == 1


def test_parent_track_carries_the_v0_position_errors(xi, cuts):
    v0 = _v0(V0Builder(cuts), xi, with_covariance=True).candidate
    t = v0.parent_track()
    assert t.charge == 0
    assert np.allclose(t.xyz(), v0.vertex.position, atol=1e-9)
    assert np.all(np.diag(t.cov)[:2] > 0.0)
    assert np.allclose(t.cov, t.cov.T)


def test_cascade_needs_a_v0_with_covariance(xi, cuts):
    v0 = _v0(V0Builder(cuts), xi, with_covariance=False).candidate
    builder = CascadeBuilder(cuts)
    assert builder.build(PV, None, xi["bachelor"], CONTEXT).stage == "v0"
    assert builder.build(PV, v0, xi["bachelor"], CONTEXT).stage == "v0"
    assert builder.selection.count("all") == 2 and builder.selection.count("v0") == 0


def test_positive_bachelor_uses_the_antilambda_hypothesis(xi, cuts):
    v0 = _v0(V0Builder(cuts), xi, with_covariance=True).candidate
    t = xi["bachelor"].track
    params = t.params.copy()
    params[4] = -params[4]
    flipped = replace(xi["bachelor"], track=replace(t, params=params, charge=1))
    out = CascadeBuilder(cuts).build(PV, v0, flipped, CONTEXT)
    assert not out.accepted
    assert out.stage == "v0_mass_window"


def test_rejection_is_idempotent(xi):
    strict = open_cuts(v0_cospa=0.99999999)
    builder = V0Builder(strict)
    before = xi["pos"].track.params.copy()
    first = _v0(builder, xi)
    second = _v0(builder, xi)
    assert (first.accepted, first.stage, first.status) == (second.accepted, second.stage, second.status)
    assert first.stage == "cospa"
    assert builder.selection.count("all") == 2 and builder.selection.count("cospa") == 0
    assert np.array_equal(xi["pos"].track.params, before)


def test_acceptance_is_idempotent(xi, cuts):
    builder = V0Builder(cuts)
    a, b = _v0(builder, xi).candidate, _v0(builder, xi).candidate
    assert np.array_equal(a.vertex.position, b.vertex.position)
    assert a.masses == b.masses
    assert builder.selection.count("radius") == 2


def test_selection_cascade_is_monotonic(xi, cuts):
    builder = V0Builder(cuts)
    weak = replace(xi["neg"], n_crossed_rows=10)
    displaced = DaughterTrack(make_track(xi["lambda_vertex"] + [0.0, 0.0, 3.0],
                                         xi["neg"].track.pxpypz(), -1, shift=0.0), index=5, n_crossed_rows=120)
    outcomes = [
        _v0(builder, xi),
        builder.build(PV, xi["pos"], weak, CONTEXT),
        builder.build(PV, xi["pos"], displaced, CONTEXT),
    ]
    assert outcomes[0].accepted
    assert outcomes[1].stage == "quality"
    assert not outcomes[2].accepted
    sel = builder.selection
    assert sel.is_monotonic()
    counts = sel.snapshot()
    assert counts["all"] == 3 and counts["quality"] == 2 and counts["radius"] == 1


def test_impact_parameter_rejects_primary_tracks():
    builder = V0Builder(open_cuts(dca_pos_to_pv=0.1, dca_neg_to_pv=0.1))
    pos = DaughterTrack(make_track(PV, [0.8, 0.3, 0.1], +1), index=0, n_crossed_rows=120)
    neg = DaughterTrack(make_track(PV, [0.7, -0.2, 0.1], -1), index=1, n_crossed_rows=120)
    out = builder.build(PV, pos, neg, CONTEXT)
    assert out.stage == "impact_parameter"


def test_precomputed_impact_parameter_is_used(xi):
    builder = V0Builder(open_cuts(dca_pos_to_pv=0.1))
    pos = replace(xi["pos"], dca_xy=0.01)
    assert builder.build(PV, pos, xi["neg"], CONTEXT).stage == "impact_parameter"


class _Exploding:
    def process(self, *args, **kwargs):
        raise np.linalg.LinAlgError("singular newton system")


def test_numerical_exception_is_counted(xi, cuts, caplog):
    builder = V0Builder(cuts)
    builder.solver = _Exploding()
    with caplog.at_level(logging.ERROR):
        out = _v0(builder, xi)
    assert not out.accepted
    assert out.status is BuildStatus.EXCEPTION and out.stage == "solve"
    assert builder.selection.exceptions == 1
    assert builder.selection.count("solve") == 0
    assert "Numerical exception" in caplog.text


def test_failed_solve_is_counted():
    # skew lines: the crossing in XY is not the 3D closest approach, so one
    # Newton step cannot settle
    vertex = np.array([5.0, 2.0, 1.0])
    pos = DaughterTrack(make_track(vertex, [1.0, 0.1, 0.0], +1, bz=0.0), index=0, n_crossed_rows=120)
    neg = DaughterTrack(make_track(vertex + [0.0, 0.0, 0.5], [1.0, -0.1, 0.5], -1, bz=0.0),
                        index=1, n_crossed_rows=120)
    straight = RunContext(run_number=1, bz=0.0)
    builder = V0Builder(open_cuts(), SolverConfig(max_iterations=1))
    out = builder.build(PV, pos, neg, straight)
    assert out.status is BuildStatus.FAILED_SOLVE and out.stage == "solve"
    assert builder.selection.failed_solves == 1
    assert builder.selection.count("impact_parameter") == 1 and builder.selection.count("solve") == 0
    assert V0Builder(open_cuts()).build(PV, pos, neg, straight).status is not BuildStatus.FAILED_SOLVE


def test_daughter_charges_must_match_their_roles(xi, cuts):
    builder = V0Builder(cuts)
    swapped = builder.build(PV, xi["neg"], xi["pos"], CONTEXT)
    same_sign = builder.build(PV, xi["pos"], replace(xi["pos"], index=9), CONTEXT)
    assert (swapped.stage, same_sign.stage) == ("quality", "quality")
    assert not swapped.accepted and not same_sign.accepted
    assert builder.selection.count("all") == 2 and builder.selection.count("quality") == 0


def test_dca_daughters_gate_rejects(xi):
    builder = V0Builder(open_cuts(dca_v0_daughters=0.05))
    apart = DaughterTrack(make_track(xi["lambda_vertex"] + [0.0, 0.0, 0.5], xi["neg"].track.pxpypz(), -1),
                          index=1, n_crossed_rows=120)
    out = builder.build(PV, xi["pos"], apart, CONTEXT)
    assert not out.accepted and out.status is BuildStatus.REJECTED
    assert out.stage == "dca_daughters"
    assert builder.selection.count("solve") == 1 and builder.selection.count("dca_daughters") == 0


def test_radius_gate_rejects(xi):
    builder = V0Builder(open_cuts(v0_radius=50.0))
    out = _v0(builder, xi)
    assert not out.accepted and out.stage == "radius"
    assert builder.selection.count("cospa") == 1 and builder.selection.count("radius") == 0

    casc = CascadeBuilder(open_cuts(casc_radius=50.0))
    v0 = _v0(V0Builder(open_cuts()), xi, with_covariance=True).candidate
    out = casc.build(PV, v0, xi["bachelor"], CONTEXT)
    assert out.stage == "radius" and casc.selection.count("radius") == 0


def test_cut_toggles_override_the_solver_metric():
    builder = V0Builder(open_cuts(use_abs_dca=False, use_weighted_pca=True))
    assert builder.solver.config.use_abs_dca is False
    assert builder.solver.config.use_weighted_pca is True
