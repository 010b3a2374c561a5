from __future__ import annotations

import cProfile
import io
import logging
import pstats
import time
from contextlib import contextmanager
from typing import Optional

_SORT_KEYS = {
    "tottime": pstats.SortKey.TIME,
    "cumtime": pstats.SortKey.CUMULATIVE,
    "calls": pstats.SortKey.CALLS,
    "name": pstats.SortKey.NAME,
}


@contextmanager
def prof(enable: bool = False,
         *,
         sort: str = "tottime",
         limit: Optional[int] = 25,
         out_path: Optional[str] = None,
         logger: Optional[logging.Logger] = None):
    r"""
    CPU profiler context manager around :class:`cProfile.Profile`.

    A no-op yielding ``None`` when ``enable`` is false. Otherwise the
    formatted :class:`pstats.Stats` table, sorted by ``sort``
    (``tottime``, ``cumtime``, ``calls`` or ``name``) and cut to ``limit``
    rows, goes to ``out_path`` if given, else to ``logger.info``, else stdout.

    Examples
    --------
    >>> with prof(True, sort="cumtime", limit=10):
    ...     run_time_frames()
    """
    if not enable:
        yield None
        return

    pr = cProfile.Profile()
    t0 = time.perf_counter()
    pr.enable()
    try:
        yield pr
    finally:
        pr.disable()
        elapsed = time.perf_counter() - t0
        s = io.StringIO()
        ps = pstats.Stats(pr, stream=s).strip_dirs().sort_stats(_SORT_KEYS.get(sort, pstats.SortKey.TIME))
        s.write(f"[prof] elapsed={elapsed:.6f}s sort={sort} limit={limit}\n")
        ps.print_stats(limit if limit is not None else 10**9)
        text = s.getvalue()
        if out_path:
            with open(out_path, "w", encoding="utf-8") as fh:
                fh.write(text)
        elif logger is not None:
            logger.info("\n%s", text)
        else:
            print(text)
