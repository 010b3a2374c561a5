from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional

import numpy as np
import pandas as pd

from strangeness_reco.builders import CascadeBuilder, CascadeCandidate, V0Builder, V0Candidate
from strangeness_reco.conditions import RunContextProvider
from strangeness_reco.data import CASCADE_COLUMNS, V0_COLUMNS, TimeFrame, candidates_to_frame
from strangeness_reco.metrics import MetricsSink, TimeFrameMetrics
from strangeness_reco.selection import CutConfiguration
from strangeness_reco.solver import SolverConfig

logger = logging.getLogger(__name__)

__all__ = ["TimeFrameResult", "TimeFrameBuilder"]


@dataclass
class TimeFrameResult:
    """Accepted candidates and counters of one time frame."""
    time_frame_id: int
    v0s: List[V0Candidate] = field(default_factory=list)
    cascades: List[CascadeCandidate] = field(default_factory=list)
    v0_metrics: Optional[TimeFrameMetrics] = None
    cascade_metrics: Optional[TimeFrameMetrics] = None
    skipped: bool = False

    def v0_frame(self, include_covariance: bool = False) -> pd.DataFrame:
        return candidates_to_frame(c.to_record(include_covariance) for c in self.v0s)

    def cascade_frame(self, include_covariance: bool = False) -> pd.DataFrame:
        return candidates_to_frame(c.to_record(include_covariance) for c in self.cascades)


class TimeFrameBuilder:
    r"""
    Run the V0 and cascade builders over one time frame.

    Per time frame: reset the counters, resolve the run context (cached per
    run by the provider), evaluate every listed V0 pair, then every cascade
    pair whose V0 was accepted, and hand the counters to the metrics sink.
    A time frame without collisions carries no run number and is skipped
    with a WARNING. Pairs that refer to an unknown collision or track are
    ignored with a DEBUG message.

    V0s are built with covariance whenever cascades are built, since the
    cascade solve needs the V0 parent track with its errors.

    Parameters
    ----------
    cuts : CutConfiguration, optional
        Final (possibly negotiated) cuts.
    solver_config : SolverConfig, optional
    provider : RunContextProvider, optional
    sink : MetricsSink, optional
    build_cascades : bool, optional
    """

    def __init__(self,
                 cuts: Optional[CutConfiguration] = None,
                 solver_config: Optional[SolverConfig] = None,
                 provider: Optional[RunContextProvider] = None,
                 sink: Optional[MetricsSink] = None,
                 build_cascades: bool = True):
        self.cuts = cuts if cuts is not None else CutConfiguration()
        self.provider = provider if provider is not None else RunContextProvider()
        self.sink = sink
        self.build_cascades = bool(build_cascades)
        self.v0_builder = V0Builder(self.cuts, solver_config)
        self.cascade_builder = CascadeBuilder(self.cuts, solver_config)
        self.log = logging.getLogger(self.__class__.__name__)

    def _finish(self, result: TimeFrameResult) -> TimeFrameResult:
        result.v0_metrics = TimeFrameMetrics.from_selection(result.time_frame_id, "v0", self.v0_builder.selection)
        if self.build_cascades:
            result.cascade_metrics = TimeFrameMetrics.from_selection(
                result.time_frame_id, "cascade", self.cascade_builder.selection)
        if self.sink is not None:
            self.sink.emit(result.v0_metrics)
            if result.cascade_metrics is not None:
                self.sink.emit(result.cascade_metrics)
        return result

    def process(self, tf: TimeFrame) -> TimeFrameResult:
        self.v0_builder.reset()
        self.cascade_builder.reset()
        result = TimeFrameResult(time_frame_id=tf.id)

        run = tf.run_number
        if run is None:
            self.log.warning("Time frame %d has no collisions to identify its run; skipping it", tf.id)
            result.skipped = True
            return self._finish(result)

        context = self.provider.context_for(run)
        n_coll = len(tf.collisions)
        self.v0_builder.selection.collisions = n_coll
        self.cascade_builder.selection.collisions = n_coll
        pvs = tf.collisions[["posX", "posY", "posZ"]].to_numpy(dtype=np.float64)
        tracks = tf.tracks
        n_tracks = len(tracks)
        with_cov = self.cuts.covariance_enabled or self.build_cascades

        accepted_v0: Dict[int, V0Candidate] = {}
        for row, (pos_id, neg_id, coll_id) in enumerate(tf.v0s[list(V0_COLUMNS)].itertuples(index=False, name=None)):
            coll_id = int(coll_id)
            pos_id, neg_id = int(pos_id), int(neg_id)
            if not 0 <= coll_id < n_coll:
                self.log.debug("V0 pair %d has no collision (%d); ignored", row, coll_id)
                continue
            if not (0 <= pos_id < n_tracks and 0 <= neg_id < n_tracks):
                self.log.debug("V0 pair %d refers to unknown tracks (%d, %d); ignored", row, pos_id, neg_id)
                continue
            out = self.v0_builder.build(pvs[coll_id], tracks.daughter(pos_id), tracks.daughter(neg_id),
                                        context, collision_index=coll_id, with_covariance=with_cov)
            if out.accepted:
                accepted_v0[row] = out.candidate
                result.v0s.append(out.candidate)

        if self.build_cascades:
            for row, (v0_id, bach_id, coll_id) in enumerate(
                    tf.cascades[list(CASCADE_COLUMNS)].itertuples(index=False, name=None)):
                coll_id = int(coll_id)
                if not 0 <= coll_id < n_coll:
                    self.log.debug("cascade pair %d has no collision (%d); ignored", row, coll_id)
                    continue
                bach_id = int(bach_id)
                if not 0 <= bach_id < n_tracks:
                    self.log.debug("cascade pair %d refers to an unknown bachelor (%d); ignored", row, bach_id)
                    continue
                out = self.cascade_builder.build(pvs[coll_id], accepted_v0.get(int(v0_id)),
                                                 tracks.daughter(bach_id), context,
                                                 collision_index=coll_id, v0_index=int(v0_id))
                if out.accepted:
                    result.cascades.append(out.candidate)

        self.log.debug("TF %d: %d V0s, %d cascades accepted", tf.id, len(result.v0s), len(result.cascades))
        return self._finish(result)
