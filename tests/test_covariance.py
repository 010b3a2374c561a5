import sys
from pathlib import Path
sys.path.append(str(Path(__file__).resolve().parents[1]))

import math

import numpy as np
import pytest

from conftest import BZ, make_track
from strangeness_reco.covariance import CovariancePropagator, CovarianceQuality
from strangeness_reco.linalg_kernels import pack_lower, robust_spd_inverse, unpack_lower
from strangeness_reco.solver import ClosestApproachSolver
from strangeness_reco.track import TrackState

VERTEX = np.array([5.0, 2.0, 1.0])
PHI0 = math.atan2(VERTEX[1], VERTEX[0])


@pytest.fixture
def approach():
    a = make_track(VERTEX, [math.cos(PHI0 + 0.3), math.sin(PHI0 + 0.3), 0.2], +1)
    b = make_track(VERTEX, [0.8 * math.cos(PHI0 - 0.25), 0.8 * math.sin(PHI0 - 0.25), -0.1], -1)
    res = ClosestApproachSolver().process(a, b, BZ)
    assert res.ok
    return res.approach


def test_candidate_covariance_is_symmetric_and_ok(approach):
    cov = CovariancePropagator().propagate(approach)
    assert cov.quality is CovarianceQuality.OK
    assert cov.position.shape == (6,) and cov.momentum.shape == (6,)
    full = cov.full6()
    assert np.allclose(full, full.T)
    assert np.all(np.diag(full) > 0.0)


def test_position_covariance_inverts_the_normal_matrix(approach):
    pos, quality = CovariancePropagator().position_covariance(approach)
    assert quality is CovarianceQuality.OK
    assert np.allclose(pos @ approach.normal_matrix, np.eye(3), atol=1e-8)


def test_momentum_covariance_sums_daughters(approach):
    mom, _ = CovariancePropagator().momentum_covariance(approach.tracks)
    expected = sum(t.cartesian_covariance()[3:, 3:] for t in approach.tracks)
    assert np.allclose(mom, expected)


def test_missing_normal_matrix_is_flagged_singular():
    a = TrackState.from_cartesian(VERTEX, [1.0, 0.3, 0.1], charge=1)
    b = TrackState.from_cartesian(VERTEX, [0.8, -0.4, 0.2], charge=-1)
    res = ClosestApproachSolver().process(a, b, 0.0)
    cov = CovariancePropagator().propagate(res.approach)
    assert cov.quality is CovarianceQuality.SINGULAR


def test_classify_flags_negative_eigenvalues():
    prop = CovariancePropagator()
    assert prop.classify(np.diag([1.0, 2.0, 3.0])) is CovarianceQuality.OK
    assert prop.classify(np.diag([1.0, -0.5, 3.0])) is CovarianceQuality.NOT_POSITIVE_SEMIDEFINITE
    assert prop.classify(np.full((3, 3), np.nan)) is CovarianceQuality.SINGULAR


def test_robust_inverse_floors_singular_matrices():
    S = np.array([[2.0, 0.5], [0.5, 1.0]])
    inv, regular = robust_spd_inverse(S)
    assert regular
    assert np.allclose(inv @ S, np.eye(2))

    inv, regular = robust_spd_inverse(np.array([[1.0, 1.0], [1.0, 1.0]]))
    assert not regular
    assert np.all(np.isfinite(inv))
    assert np.allclose(inv, inv.T)


def test_packing_order():
    m = np.array([[1.0, 2.0, 4.0], [2.0, 3.0, 5.0], [4.0, 5.0, 6.0]])
    assert np.array_equal(pack_lower(m), [1.0, 2.0, 3.0, 4.0, 5.0, 6.0])
    assert np.array_equal(unpack_lower(pack_lower(m)), m)
