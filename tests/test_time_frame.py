import sys
from pathlib import Path
sys.path.append(str(Path(__file__).resolve().parents[1]))

import logging

import numpy as np
import orjson
import pandas as pd
import pytest

from conftest import BZ, open_cuts, xi_time_frame
from strangeness_reco.conditions import RunContextProvider
from strangeness_reco.data import RUN2_SCHEMA, TimeFrame, TrackTable, load_time_frame, write_time_frame
from strangeness_reco.errors import MissingConditionsError
from strangeness_reco.metrics import JsonLinesMetricsSink, MemoryMetricsSink, summarize
from strangeness_reco.parallel_builder import ParallelTimeFrameBuilder
from strangeness_reco.time_frame_builder import TimeFrameBuilder


def test_csv_round_trip(tmp_path, time_frame):
    out = write_time_frame(time_frame, tmp_path / "tf_0042")
    loaded = load_time_frame(out)
    assert loaded.id == 42
    assert loaded.run_number == 1
    assert len(loaded.tracks) == 3
    for i in range(3):
        a, b = time_frame.tracks.daughter(i), loaded.tracks.daughter(i)
        assert np.allclose(a.track.params, b.track.params, rtol=1e-12)
        assert np.allclose(a.track.cov, b.track.cov, rtol=1e-12)
        assert a.track.charge == b.track.charge
        assert b.n_crossed_rows == 120 and b.tpc_refit
    pd.testing.assert_frame_equal(loaded.v0s, time_frame.v0s, check_dtype=False)
    pd.testing.assert_frame_equal(loaded.cascades, time_frame.cascades, check_dtype=False)


def test_missing_optional_tables_load_empty(tmp_path, time_frame):
    write_time_frame(time_frame, tmp_path / "tf_1")
    (tmp_path / "tf_1" / "cascades.csv").unlink()
    loaded = load_time_frame(tmp_path / "tf_1", time_frame_id=9)
    assert loaded.id == 9
    assert loaded.cascades.empty


def test_track_table_validates_columns():
    with pytest.raises(ValueError, match="missing columns"):
        TrackTable(pd.DataFrame({"x": [1.0], "alpha": [0.0]}))


def test_run2_table_carries_precomputed_dca(time_frame):
    df = time_frame.tracks.df.assign(dcaXY=[0.5, np.nan, 0.2])
    table = TrackTable(df)
    assert table.schema is RUN2_SCHEMA
    assert table.daughter(0).dca_xy == 0.5
    assert table.daughter(1).dca_xy is None


def _builder(sink=None, **kw):
    return TimeFrameBuilder(open_cuts(), provider=RunContextProvider(bz_override=BZ), sink=sink, **kw)


def test_time_frame_builder(time_frame):
    sink = MemoryMetricsSink()
    result = _builder(sink).process(time_frame)
    assert not result.skipped
    assert len(result.v0s) == 1 and len(result.cascades) == 1
    assert result.v0s[0].covariance is not None
    assert [m.builder for m in sink.records] == ["v0", "cascade"]
    assert sink.records[0].stages["radius"] == 1 and sink.records[0].collisions == 1
    assert sink.records[1].stages["radius"] == 1

    v0s = result.v0_frame(include_covariance=True)
    assert len(v0s) == 1 and "position_cov_5" in v0s.columns
    assert result.cascade_frame().loc[0, "bachelor_index"] == 2


def test_counters_are_reset_per_time_frame(time_frame):
    builder = _builder()
    builder.process(time_frame)
    result = builder.process(time_frame)
    assert result.v0_metrics.stages["all"] == 1


def test_v0_only(time_frame):
    result = _builder(build_cascades=False).process(time_frame)
    assert len(result.v0s) == 1 and result.v0s[0].covariance is None
    assert result.cascades == [] and result.cascade_metrics is None
    assert result.cascade_frame().empty


def test_time_frame_without_collisions_is_skipped(time_frame, caplog):
    empty = TimeFrame(id=5, tracks=time_frame.tracks)
    with caplog.at_level(logging.WARNING):
        result = _builder().process(empty)
    assert result.skipped and result.v0s == []
    assert result.v0_metrics.stages["all"] == 0
    assert "no collisions" in caplog.text


def test_pairs_with_unknown_collisions_are_ignored(time_frame):
    time_frame.v0s["collisionId"] = 3
    result = _builder().process(time_frame)
    assert result.v0s == [] and result.v0_metrics.stages["all"] == 0


@pytest.mark.parametrize("pos_id", [-1, -3, 3, 99])
def test_pairs_with_unknown_tracks_are_ignored(time_frame, pos_id):
    time_frame.v0s["posTrackId"] = pos_id
    result = _builder().process(time_frame)
    assert result.v0s == [] and result.cascades == []
    assert result.v0_metrics.stages["all"] == 0
    # the cascade row is still evaluated and stops for lack of a V0
    assert result.cascade_metrics.stages["all"] == 1
    assert result.cascade_metrics.stages["v0"] == 0


def test_cascades_with_unknown_bachelors_are_ignored(time_frame):
    time_frame.cascades["bachelorId"] = -1
    result = _builder().process(time_frame)
    assert len(result.v0s) == 1 and result.cascades == []
    assert result.cascade_metrics.stages["all"] == 0


def test_parallel_matches_sequential():
    frames = [xi_time_frame(tf_id=i, run=1 + i % 2) for i in range(6)]
    sequential = [_builder().process(tf) for tf in frames]
    sink = MemoryMetricsSink()
    par = ParallelTimeFrameBuilder(lambda: _builder(sink), max_workers=3)
    parallel = par.process(frames)
    assert [r.time_frame_id for r in parallel] == list(range(6))
    assert 1 <= par.n_builders <= 3
    assert len(sink.records) == 12
    for s, p in zip(sequential, parallel):
        assert len(s.v0s) == len(p.v0s) == 1
        assert np.array_equal(s.v0s[0].vertex.position, p.v0s[0].vertex.position)
        assert np.array_equal(s.cascades[0].vertex.position, p.cascades[0].vertex.position)


def test_parallel_reraises_task_errors():
    par = ParallelTimeFrameBuilder(lambda: TimeFrameBuilder(open_cuts(), provider=RunContextProvider()), 2)
    with pytest.raises(MissingConditionsError):
        par.process([xi_time_frame(tf_id=i) for i in range(3)])


def test_metrics_sinks(tmp_path, time_frame):
    path = tmp_path / "metrics" / "tf.jsonl"
    builder = _builder(JsonLinesMetricsSink(path))
    results = [builder.process(time_frame), builder.process(xi_time_frame(tf_id=2))]
    lines = [orjson.loads(line) for line in path.read_bytes().splitlines()]
    assert [(d["time_frame_id"], d["builder"]) for d in lines] == [(1, "v0"), (1, "cascade"), (2, "v0"), (2, "cascade")]
    assert lines[0]["stages"]["all"] == 1

    summary = summarize(m for r in results for m in (r.v0_metrics, r.cascade_metrics))
    assert summary.loc["v0", "all"] == 2
    assert summary.loc["cascade", "time_frames"] == 2
    assert summarize([]).empty
