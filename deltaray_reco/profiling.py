from __future__ import annotations

import cProfile
import io
import logging
import pstats
import time
from contextlib import contextmanager
from typing import Optional

__all__ = ["prof"]

_SORT_KEYS = {
    "tottime": pstats.SortKey.TIME,
    "cumtime": pstats.SortKey.CUMULATIVE,
    "calls": pstats.SortKey.CALLS,
    "name": pstats.SortKey.NAME,
}


@contextmanager
def prof(
    enable: bool = False,
    *,
    sort: str = "tottime",
    limit: Optional[int] = 25,
    out_path: Optional[str] = None,
    logger: Optional[logging.Logger] = None,
):
    r"""
    CPU profiler context manager around :class:`cProfile.Profile`.

    Parameters
    ----------
    enable : bool, default: False
        When ``False`` the block runs unprofiled and ``None`` is yielded.
    sort : {"tottime", "cumtime", "calls", "name"}
        Sort order of the report. Unknown names fall back to ``"tottime"``.
    limit : int or None
        Number of report rows; ``None`` prints everything.
    out_path : str, optional
        Append the text report to this file instead of logging it.
    logger : logging.Logger, optional
        Destination of the report when ``out_path`` is not set; defaults to
        this module's logger.

    Yields
    ------
    cProfile.Profile or None
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
        ps.print_stats(limit if limit is not None else 1_000_000)
        text = f"[prof] elapsed={elapsed:.6f}s sort={sort} limit={limit}\n" + s.getvalue()
        if out_path:
            with open(out_path, "a", encoding="utf-8") as f:
                f.write(text)
        else:
            (logger or logging.getLogger(__name__)).info(text)
