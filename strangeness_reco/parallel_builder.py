from __future__ import annotations

import logging
import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import Callable, Iterable, List, Optional

from strangeness_reco.data import TimeFrame
from strangeness_reco.time_frame_builder import TimeFrameBuilder, TimeFrameResult

logger = logging.getLogger(__name__)

__all__ = ["ParallelTimeFrameBuilder"]


class ParallelTimeFrameBuilder:
    r"""
    Map :class:`TimeFrameBuilder` over time frames with a thread pool.

    Every worker thread lazily creates its own builder through ``factory``,
    so solvers and selection counters are never shared between threads.
    Results come back in input order.

    Parameters
    ----------
    factory : callable
        Zero-argument callable returning a fresh :class:`TimeFrameBuilder`.
        Anything it closes over (provider, sink) must be thread-safe.
    max_workers : int, optional
        Size of the :class:`concurrent.futures.ThreadPoolExecutor`.

    Notes
    -----
    A task that raises (e.g. :class:`~strangeness_reco.errors.MissingConditionsError`)
    is logged and re-raised after the remaining tasks finish.
    """

    def __init__(self, factory: Callable[[], TimeFrameBuilder], max_workers: int = 4):
        self.factory = factory
        self.max_workers = max(1, int(max_workers))
        self._local = threading.local()
        self._lock = threading.Lock()
        self.n_builders = 0

    def _builder(self) -> TimeFrameBuilder:
        b = getattr(self._local, "builder", None)
        if b is None:
            b = self.factory()
            self._local.builder = b
            with self._lock:
                self.n_builders += 1
        return b

    def _process(self, tf: TimeFrame) -> TimeFrameResult:
        return self._builder().process(tf)

    def process(self, time_frames: Iterable[TimeFrame]) -> List[TimeFrameResult]:
        tfs = list(time_frames)
        results: List[Optional[TimeFrameResult]] = [None] * len(tfs)
        first_error: Optional[BaseException] = None
        with ThreadPoolExecutor(max_workers=self.max_workers) as exe:
            futures = {exe.submit(self._process, tf): i for i, tf in enumerate(tfs)}
            for f in as_completed(futures):
                i = futures[f]
                try:
                    results[i] = f.result()
                except Exception as e:
                    logger.exception("Time frame %d failed: %s", tfs[i].id, e)
                    if first_error is None:
                        first_error = e
        if first_error is not None:
            raise first_error
        return results  # type: ignore[return-value]
