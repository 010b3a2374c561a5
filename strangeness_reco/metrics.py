from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Protocol, Union, runtime_checkable

import orjson
import pandas as pd

from strangeness_reco.selection import SelectionCascade

logger = logging.getLogger(__name__)

__all__ = [
    "TimeFrameMetrics",
    "MetricsSink",
    "LoggingMetricsSink",
    "JsonLinesMetricsSink",
    "MemoryMetricsSink",
    "summarize",
]


@dataclass(frozen=True)
class TimeFrameMetrics:
    """Counters of one builder for one time frame."""
    time_frame_id: int
    builder: str
    stages: Dict[str, int] = field(default_factory=dict)
    exceptions: int = 0
    failed_solves: int = 0
    collisions: int = 0

    @classmethod
    def from_selection(cls, time_frame_id: int, builder: str, selection: SelectionCascade) -> "TimeFrameMetrics":
        return cls(
            time_frame_id=int(time_frame_id),
            builder=builder,
            stages=dict(selection.snapshot()),
            exceptions=int(selection.exceptions),
            failed_solves=int(selection.failed_solves),
            collisions=int(selection.collisions),
        )

    def to_dict(self) -> Dict[str, object]:
        return {
            "time_frame_id": self.time_frame_id,
            "builder": self.builder,
            "stages": dict(self.stages),
            "exceptions": self.exceptions,
            "failed_solves": self.failed_solves,
            "collisions": self.collisions,
        }


@runtime_checkable
class MetricsSink(Protocol):
    def emit(self, metrics: TimeFrameMetrics) -> None:
        ...


class LoggingMetricsSink:
    """Writes one INFO line per time frame and builder."""

    def __init__(self, log: Optional[logging.Logger] = None):
        self.log = log or logger

    def emit(self, metrics: TimeFrameMetrics) -> None:
        stages = " > ".join(f"{k}={v}" for k, v in metrics.stages.items())
        self.log.info("TF %d %s: %s | exceptions=%d failed_solves=%d collisions=%d",
                      metrics.time_frame_id, metrics.builder, stages,
                      metrics.exceptions, metrics.failed_solves, metrics.collisions)


class JsonLinesMetricsSink:
    """Appends one :mod:`orjson` line per metrics record to ``path``."""

    def __init__(self, path: Union[str, Path]):
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()

    def emit(self, metrics: TimeFrameMetrics) -> None:
        line = orjson.dumps(metrics.to_dict()) + b"\n"
        with self._lock, self.path.open("ab") as fh:
            fh.write(line)


class MemoryMetricsSink:
    """Keeps every record in a list; handy for tests and summaries."""

    def __init__(self):
        self._lock = threading.Lock()
        self.records: List[TimeFrameMetrics] = []

    def emit(self, metrics: TimeFrameMetrics) -> None:
        with self._lock:
            self.records.append(metrics)


def summarize(metrics: Iterable[TimeFrameMetrics]) -> pd.DataFrame:
    """
    Sum the counters per builder.

    Returns
    -------
    pandas.DataFrame
        Index ``builder``; one column per stage plus ``exceptions``,
        ``failed_solves``, ``collisions`` and ``time_frames``.
    """
    rows = []
    for m in metrics:
        row = {"builder": m.builder, **m.stages, "exceptions": m.exceptions,
               "failed_solves": m.failed_solves, "collisions": m.collisions, "time_frames": 1}
        rows.append(row)
    if not rows:
        return pd.DataFrame()
    df = pd.DataFrame(rows)
    return df.groupby("builder", sort=False).sum(numeric_only=True)
