import sys
from dataclasses import replace
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

import numpy as np
import pandas as pd
import pytest

from strangeness_reco.data import DaughterTrack, TimeFrame, TrackTable
from strangeness_reco.kinematics import LAMBDA_MASS, PION_MASS, PROTON_MASS, XI_MASS
from strangeness_reco.selection import CutConfiguration
from strangeness_reco.track import TrackState

BZ = 5.0
COV5 = np.diag([1e-4, 1e-4, 1e-6, 1e-6, 1e-4])
XI_VERTEX = np.array([3.0, 1.0, 0.5])


def make_track(vertex, momentum, charge, bz=BZ, shift=20.0):
    """Track born at ``vertex`` with ``momentum``, moved ``shift`` cm outwards."""
    t = TrackState.from_cartesian(vertex, momentum, charge=charge)
    t = replace(t, cov=COV5)
    return t.propagate_to_x(t.x + shift, bz)


def two_body_decay(p_parent, m_parent, m1, m2, transverse):
    """Lab momenta of a decay whose daughters are emitted along ``transverse`` in the rest frame."""
    P = np.asarray(p_parent, dtype=float)
    pm = np.linalg.norm(P)
    w = P / pm
    n = np.asarray(transverse, dtype=float)
    n = n - (n @ w) * w
    n /= np.linalg.norm(n)
    q = np.sqrt((m_parent**2 - (m1 + m2) ** 2) * (m_parent**2 - (m1 - m2) ** 2)) / (2.0 * m_parent)
    e1, e2 = np.hypot(q, m1), np.hypot(q, m2)
    gb = pm / m_parent
    return q * n + gb * e1 * w, -q * n + gb * e2 * w


def xi_topology():
    """Xi- at XI_VERTEX -> Lambda (4 cm flight) + pi-, Lambda -> p + pi-."""
    u = XI_VERTEX / np.linalg.norm(XI_VERTEX)
    zhat = np.array([0.0, 0.0, 1.0])
    p_lam, p_bach = two_body_decay(2.0 * u, XI_MASS, LAMBDA_MASS, PION_MASS, np.cross(u, zhat) + 0.3 * zhat)
    w = p_lam / np.linalg.norm(p_lam)
    lam_vertex = XI_VERTEX + 4.0 * w
    p_prot, p_pi = two_body_decay(p_lam, LAMBDA_MASS, PROTON_MASS, PION_MASS, np.cross(w, zhat) + 0.2 * zhat)
    return {
        "xi_vertex": XI_VERTEX.copy(),
        "lambda_vertex": lam_vertex,
        "p_lambda": p_lam,
        "pos": DaughterTrack(make_track(lam_vertex, p_prot, +1), index=0, n_crossed_rows=120),
        "neg": DaughterTrack(make_track(lam_vertex, p_pi, -1), index=1, n_crossed_rows=120),
        "bachelor": DaughterTrack(make_track(XI_VERTEX, p_bach, -1), index=2, n_crossed_rows=120),
    }


def open_cuts(**overrides):
    """Cuts loose enough for the synthetic topologies; impact parameters not required."""
    base = dict(dca_pos_to_pv=0.0, dca_neg_to_pv=0.0, dca_bach_to_pv=0.0, v0_cospa=0.9, casc_cospa=0.9)
    base.update(overrides)
    return CutConfiguration(**base)


def xi_time_frame(tf_id=1, run=1):
    topo = xi_topology()
    tracks = TrackTable.from_daughters([topo["pos"], topo["neg"], topo["bachelor"]])
    return TimeFrame(
        id=tf_id,
        tracks=tracks,
        collisions=pd.DataFrame({"posX": [0.0], "posY": [0.0], "posZ": [0.0], "runNumber": [run]}),
        v0s=pd.DataFrame({"posTrackId": [0], "negTrackId": [1], "collisionId": [0]}),
        cascades=pd.DataFrame({"v0Id": [0], "bachelorId": [2], "collisionId": [0]}),
    )


@pytest.fixture
def xi():
    return xi_topology()


@pytest.fixture
def cuts():
    return open_cuts()


@pytest.fixture
def time_frame():
    return xi_time_frame()
