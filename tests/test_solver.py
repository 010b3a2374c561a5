import sys
from pathlib import Path
sys.path.append(str(Path(__file__).resolve().parents[1]))

import math

import numpy as np
import pytest

from conftest import BZ, make_track
from strangeness_reco.errors import ConfigurationError
from strangeness_reco.material import CylindricalMaterialLUT, MaterialLayer
from strangeness_reco.solver import ClosestApproachSolver, SolverConfig, SolveStatus, crossing_seeds
from strangeness_reco.track import TrackState

VERTEX = np.array([5.0, 2.0, 1.0])
PHI0 = math.atan2(VERTEX[1], VERTEX[0])


def _straight_pair(z_offset=0.0):
    a = make_track(VERTEX, [1.0, 0.3, 0.1], +1, bz=0.0)
    b = make_track(VERTEX + [0.0, 0.0, z_offset], [0.8, -0.4, 0.2], -1, bz=0.0)
    return a, b


def _curved_pair():
    a = make_track(VERTEX, [math.cos(PHI0 + 0.3), math.sin(PHI0 + 0.3), 0.2], +1)
    b = make_track(VERTEX, [0.8 * math.cos(PHI0 - 0.25), 0.8 * math.sin(PHI0 - 0.25), -0.1], -1)
    return a, b


def test_intersecting_straight_lines_converge():
    a, b = _straight_pair()
    solver = ClosestApproachSolver()
    res = solver.process(a, b, 0.0)
    assert res.ok
    ca = res.approach
    assert np.allclose(ca.vertex, VERTEX, atol=1e-4)
    assert ca.n_iterations < solver.config.max_iterations
    assert ca.dca < 1e-4
    assert ca.n_candidates == 1
    assert solver.n_calls == 1 and solver.n_converged == 1


def test_intersecting_helices_converge():
    a, b = _curved_pair()
    res = ClosestApproachSolver().process(a, b, BZ)
    assert res.ok
    ca = res.approach
    assert np.allclose(ca.vertex, VERTEX, atol=1e-4)
    assert np.allclose(ca.tracks[0].xyz(), VERTEX, atol=1e-4)
    assert np.allclose(ca.tracks[1].xyz(), VERTEX, atol=1e-4)
    assert ca.normal_matrix is not None
    assert np.allclose(ca.normal_matrix, ca.normal_matrix.T)


def test_seeds_of_intersecting_helices_contain_the_vertex():
    a, b = _curved_pair()
    seeds = crossing_seeds(a, b, BZ)
    assert 1 <= len(seeds) <= 2
    assert min(np.hypot(*(s - VERTEX[:2])) for s in seeds) < 1e-6


def test_input_tracks_are_not_modified():
    a, b = _curved_pair()
    before = (a.params.copy(), b.params.copy(), a.x, b.x)
    ClosestApproachSolver().process(a, b, BZ)
    assert np.array_equal(a.params, before[0]) and np.array_equal(b.params, before[1])
    assert (a.x, b.x) == before[2:]


def test_chi2_is_half_the_squared_distance():
    a, b = _straight_pair(z_offset=0.5)
    res = ClosestApproachSolver().process(a, b, 0.0)
    assert res.ok
    assert 0.0 < res.approach.dca <= 0.5 + 1e-6
    assert res.approach.chi2 == pytest.approx(0.5 * res.approach.dca ** 2, rel=1e-6)


def test_vertex_beyond_max_r_is_rejected():
    a, b = _straight_pair()
    res = ClosestApproachSolver(SolverConfig(max_r=3.0)).process(a, b, 0.0)
    assert not res.ok
    assert res.status is SolveStatus.OUT_OF_RANGE


def test_chi2_ceiling_rejects():
    a, b = _straight_pair(z_offset=0.5)
    res = ClosestApproachSolver(SolverConfig(max_chi2=0.01)).process(a, b, 0.0)
    assert res.status is SolveStatus.OUT_OF_RANGE


def test_iteration_ceiling_is_not_converged():
    # skew lines: one exact Newton step still lowers the chi2 by far more than
    # min_rel_chi2_change, so the loop wants a second iteration
    a = make_track(VERTEX, [1.0, 0.1, 0.0], +1, bz=0.0)
    b = make_track(VERTEX + [0.0, 0.0, 0.5], [1.0, -0.1, 0.5], -1, bz=0.0)
    res = ClosestApproachSolver(SolverConfig(max_iterations=1)).process(a, b, 0.0)
    assert not res.ok
    assert res.status is SolveStatus.NOT_CONVERGED
    assert res.approach is None

    res = ClosestApproachSolver(SolverConfig(max_iterations=3)).process(a, b, 0.0)
    assert res.ok
    assert res.approach.n_iterations >= 2
    assert res.approach.dca < 0.5


def test_non_convergence_outranks_the_range_cut():
    a, _ = _curved_pair()
    b = make_track(VERTEX + [0.0, 0.0, 0.5],
                   [0.8 * math.cos(PHI0 - 0.25), 0.8 * math.sin(PHI0 - 0.25), -0.1], -1)
    seeds = crossing_seeds(a, b, BZ)
    radii = sorted(float(np.hypot(*s)) for s in seeds)
    assert len(radii) == 2 and radii[0] < 100.0 < radii[1]
    res = ClosestApproachSolver(SolverConfig(max_r=100.0, max_iterations=1)).process(a, b, BZ)
    assert res.status is SolveStatus.NOT_CONVERGED


def test_identical_circles_have_no_seed():
    a, _ = _curved_pair()
    res = ClosestApproachSolver().process(a, a, BZ)
    assert res.status is SolveStatus.NO_SEED


def test_weighted_metric_finds_the_same_crossing():
    a, b = _straight_pair()
    cfg = SolverConfig(use_abs_dca=False, use_weighted_pca=True)
    res = ClosestApproachSolver(cfg).process(a, b, 0.0)
    assert res.ok
    assert np.allclose(res.approach.vertex, VERTEX, atol=1e-4)


def test_weighted_metric_needs_position_errors():
    a = TrackState.from_cartesian(VERTEX, [1.0, 0.3, 0.1], charge=1)
    b = TrackState.from_cartesian(VERTEX, [0.8, -0.4, 0.2], charge=-1)
    with pytest.raises(np.linalg.LinAlgError):
        ClosestApproachSolver(SolverConfig(use_abs_dca=False)).process(a, b, 0.0)


def test_missing_position_errors_leave_no_normal_matrix():
    a = TrackState.from_cartesian(VERTEX, [1.0, 0.3, 0.1], charge=1)
    b = TrackState.from_cartesian(VERTEX, [0.8, -0.4, 0.2], charge=-1)
    res = ClosestApproachSolver().process(a, b, 0.0)
    assert res.ok
    assert res.approach.normal_matrix is None


def test_uncrossed_material_degrades_to_field_only():
    a, b = _curved_pair()
    far = CylindricalMaterialLUT([MaterialLayer(150.0, 0.05, 1.0)])
    plain = ClosestApproachSolver().process(a, b, BZ, None)
    degraded = ClosestApproachSolver().process(a, b, BZ, far)
    assert plain.ok and degraded.ok
    assert np.allclose(plain.approach.vertex, degraded.approach.vertex)
    for t_plain, t_deg in zip(plain.approach.tracks, degraded.approach.tracks):
        assert np.allclose(t_plain.params, t_deg.params, atol=1e-10)
        assert np.allclose(t_plain.cov, t_deg.cov, atol=1e-12)


def test_material_on_the_way_back_restores_energy():
    a, b = _curved_pair()
    lut = CylindricalMaterialLUT([MaterialLayer(15.0, 0.01, 0.5)])
    plain = ClosestApproachSolver().process(a, b, BZ)
    corrected = ClosestApproachSolver().process(a, b, BZ, lut)
    assert corrected.ok
    assert np.allclose(plain.approach.vertex, corrected.approach.vertex)
    for t_plain, t_mat in zip(plain.approach.tracks, corrected.approach.tracks):
        assert abs(t_mat.q2pt) < abs(t_plain.q2pt)
        assert t_mat.cov[2, 2] > t_plain.cov[2, 2]


def test_solver_config_from_mapping():
    cfg = SolverConfig.from_mapping({"max_iterations": 30, "max_r": 50.0})
    assert cfg.max_iterations == 30 and cfg.max_r == 50.0
    assert SolverConfig.from_mapping(None) == SolverConfig()
    with pytest.raises(ConfigurationError):
        SolverConfig.from_mapping({"max_itrations": 30})
    with pytest.raises(ConfigurationError):
        SolverConfig.from_mapping({"max_iterations": 0})
