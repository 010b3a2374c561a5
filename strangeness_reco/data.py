from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional, Protocol, Tuple, Union, runtime_checkable

import numpy as np
import pandas as pd

from strangeness_reco.track import TrackState

logger = logging.getLogger(__name__)

__all__ = [
    "DaughterTrack",
    "TrackSource",
    "TrackSchema",
    "RUN3_SCHEMA",
    "RUN2_SCHEMA",
    "TrackTable",
    "TimeFrame",
    "load_time_frame",
    "write_time_frame",
    "candidates_to_frame",
    "COLLISION_COLUMNS",
    "V0_COLUMNS",
    "CASCADE_COLUMNS",
]


@dataclass(frozen=True, eq=False)
class DaughterTrack:
    """
    A track offered to the builders with its quality information.

    ``dca_xy`` is the precomputed transverse DCA to the primary vertex when
    the input source provides one; otherwise the builders compute it.
    """
    track: TrackState
    index: int = -1
    n_crossed_rows: int = 0
    tpc_refit: bool = True
    dca_xy: Optional[float] = None


@runtime_checkable
class TrackSource(Protocol):
    """Anything that can hand out :class:`DaughterTrack` objects by index."""

    def __len__(self) -> int:
        ...

    def daughter(self, index: int) -> DaughterTrack:
        ...


_COV_COLUMNS = (
    "cYY", "cZY", "cZZ", "cSnpY", "cSnpZ", "cSnpSnp", "cTglY", "cTglZ", "cTglSnp", "cTglTgl",
    "c1PtY", "c1PtZ", "c1PtSnp", "c1PtTgl", "c1Pt21Pt2",
)


@dataclass(frozen=True)
class TrackSchema:
    """
    Column map of one track-table flavour.

    The 15 covariance columns follow the packed lower-triangle order of
    ``(y, z, snp, tgl, q/pt)``. ``dca_xy`` and ``tpc_refit`` are optional.
    """
    name: str
    x: str = "x"
    alpha: str = "alpha"
    params: Tuple[str, ...] = ("y", "z", "snp", "tgl", "signed1Pt")
    cov: Tuple[str, ...] = _COV_COLUMNS
    crossed_rows: str = "tpcNClsCrossedRows"
    tpc_refit: Optional[str] = "tpcRefit"
    dca_xy: Optional[str] = None

    def required_columns(self) -> List[str]:
        cols = [self.x, self.alpha, *self.params, *self.cov, self.crossed_rows]
        return cols + [c for c in (self.tpc_refit, self.dca_xy) if c is not None]


RUN3_SCHEMA = TrackSchema("run3")
# older productions ship the DCA to the primary vertex with each track
RUN2_SCHEMA = TrackSchema("run2", dca_xy="dcaXY")


class TrackTable:
    r"""
    :class:`TrackSource` backed by a :class:`pandas.DataFrame`.

    Columns are pulled into contiguous NumPy arrays once; :meth:`daughter`
    then builds :class:`TrackState` objects on demand. The charge is the sign
    of :math:`q/p_T`.

    Parameters
    ----------
    df : pandas.DataFrame
        One row per track, indexed positionally.
    schema : TrackSchema, optional
        Column map; chosen automatically when omitted (``dcaXY`` present →
        :data:`RUN2_SCHEMA`, else :data:`RUN3_SCHEMA`).
    """

    __slots__ = ("df", "schema", "_x", "_alpha", "_params", "_cov", "_rows", "_refit", "_dca")

    def __init__(self, df: pd.DataFrame, schema: Optional[TrackSchema] = None):
        if schema is None:
            schema = RUN2_SCHEMA if "dcaXY" in df.columns else RUN3_SCHEMA
        missing = [c for c in schema.required_columns() if c not in df.columns]
        if missing:
            raise ValueError(f"track table ({schema.name}) is missing columns: {', '.join(missing)}")
        self.df = df.reset_index(drop=True)
        self.schema = schema
        self._x = self.df[schema.x].to_numpy(dtype=np.float64)
        self._alpha = self.df[schema.alpha].to_numpy(dtype=np.float64)
        self._params = self.df[list(schema.params)].to_numpy(dtype=np.float64)
        self._cov = self.df[list(schema.cov)].to_numpy(dtype=np.float64)
        self._rows = self.df[schema.crossed_rows].to_numpy(dtype=np.int64)
        self._refit = (self.df[schema.tpc_refit].to_numpy(dtype=bool) if schema.tpc_refit
                       else np.ones(len(self.df), dtype=bool))
        self._dca = self.df[schema.dca_xy].to_numpy(dtype=np.float64) if schema.dca_xy else None

    def __len__(self) -> int:
        return len(self._x)

    def daughter(self, index: int) -> DaughterTrack:
        params = self._params[index]
        charge = 1 if params[4] >= 0.0 else -1
        track = TrackState(x=self._x[index], alpha=self._alpha[index], params=params,
                           cov=self._cov[index], charge=charge)
        dca = None
        if self._dca is not None and np.isfinite(self._dca[index]):
            dca = float(self._dca[index])
        return DaughterTrack(track=track, index=int(index), n_crossed_rows=int(self._rows[index]),
                             tpc_refit=bool(self._refit[index]), dca_xy=dca)

    @classmethod
    def from_daughters(cls, daughters: Iterable[DaughterTrack], schema: TrackSchema = RUN3_SCHEMA) -> "TrackTable":
        """Inverse of :meth:`daughter`, mostly for writing synthetic data."""
        rows: List[Dict[str, Any]] = []
        for d in daughters:
            t = d.track
            row: Dict[str, Any] = {schema.x: t.x, schema.alpha: t.alpha}
            row.update(zip(schema.params, t.params.tolist()))
            row.update(zip(schema.cov, t.cov_packed().tolist()))
            row[schema.crossed_rows] = d.n_crossed_rows
            if schema.tpc_refit:
                row[schema.tpc_refit] = d.tpc_refit
            if schema.dca_xy:
                row[schema.dca_xy] = np.nan if d.dca_xy is None else d.dca_xy
            rows.append(row)
        return cls(pd.DataFrame(rows, columns=schema.required_columns()), schema)


def _empty(columns: Iterable[str]) -> pd.DataFrame:
    return pd.DataFrame({c: pd.Series(dtype="float64") for c in columns})


COLLISION_COLUMNS = ("posX", "posY", "posZ", "runNumber")
V0_COLUMNS = ("posTrackId", "negTrackId", "collisionId")
CASCADE_COLUMNS = ("v0Id", "bachelorId", "collisionId")


@dataclass
class TimeFrame:
    """
    One processing unit: tracks, collisions and the pairings to try.

    ``v0s`` rows pair a positive and a negative track of one collision;
    ``cascades`` rows pair a ``v0s`` row (by position) with a bachelor track.
    """
    id: int
    tracks: TrackTable
    collisions: pd.DataFrame = field(default_factory=lambda: _empty(COLLISION_COLUMNS))
    v0s: pd.DataFrame = field(default_factory=lambda: _empty(V0_COLUMNS))
    cascades: pd.DataFrame = field(default_factory=lambda: _empty(CASCADE_COLUMNS))

    @property
    def run_number(self) -> Optional[int]:
        """Run of the first collision, ``None`` without collisions."""
        if self.collisions.empty:
            return None
        return int(self.collisions["runNumber"].iloc[0])


_TF_ID = re.compile(r"(\d+)$")


def load_time_frame(directory: Union[str, Path],
                    time_frame_id: Optional[int] = None,
                    schema: Optional[TrackSchema] = None) -> TimeFrame:
    """
    Read ``tracks.csv``, ``collisions.csv``, ``v0s.csv`` and (optionally)
    ``cascades.csv`` from ``directory``.

    The time-frame id defaults to the trailing number of the directory name.
    """
    directory = Path(directory)
    if time_frame_id is None:
        m = _TF_ID.search(directory.name)
        time_frame_id = int(m.group(1)) if m else 0
    tracks = TrackTable(pd.read_csv(directory / "tracks.csv"), schema)

    def _read(name: str, columns: Tuple[str, ...]) -> pd.DataFrame:
        path = directory / name
        if not path.exists():
            logger.debug("%s not found, using an empty table", path)
            return _empty(columns)
        df = pd.read_csv(path)
        missing = [c for c in columns if c not in df.columns]
        if missing:
            raise ValueError(f"{path} is missing columns: {', '.join(missing)}")
        return df

    tf = TimeFrame(
        id=time_frame_id,
        tracks=tracks,
        collisions=_read("collisions.csv", COLLISION_COLUMNS),
        v0s=_read("v0s.csv", V0_COLUMNS),
        cascades=_read("cascades.csv", CASCADE_COLUMNS),
    )
    logger.info("Loaded time frame %d from %s: %d tracks, %d collisions, %d V0 pairs, %d cascade pairs",
                tf.id, directory, len(tracks), len(tf.collisions), len(tf.v0s), len(tf.cascades))
    return tf


def write_time_frame(tf: TimeFrame, directory: Union[str, Path]) -> Path:
    """Write ``tf`` in the layout read by :func:`load_time_frame`."""
    directory = Path(directory)
    directory.mkdir(parents=True, exist_ok=True)
    tf.tracks.df.to_csv(directory / "tracks.csv", index=False)
    tf.collisions.to_csv(directory / "collisions.csv", index=False)
    tf.v0s.to_csv(directory / "v0s.csv", index=False)
    tf.cascades.to_csv(directory / "cascades.csv", index=False)
    return directory


def candidates_to_frame(records: Iterable[Mapping[str, Any]]) -> pd.DataFrame:
    """One row per candidate record; an empty frame when there are none."""
    rows = list(records)
    if not rows:
        return pd.DataFrame()
    return pd.DataFrame.from_records(rows)
