from __future__ import annotations

import cProfile
import io
import logging
import pstats
import time
from contextlib import contextmanager
from typing import Iterator, Optional

_SORT_KEYS = {
    "tottime": pstats.SortKey.TIME,
    "cumtime": pstats.SortKey.CUMULATIVE,
    "calls": pstats.SortKey.CALLS,
    "ncalls": pstats.SortKey.CALLS,
    "name": pstats.SortKey.NAME,
    "file": pstats.SortKey.FILENAME,
}


@contextmanager
def prof(enable: bool = False,
         *,
         sort: str = "tottime",
         limit: Optional[int] = 25,
         out_path: Optional[str] = None,
         logger: Optional[logging.Logger] = None) -> Iterator[Optional[cProfile.Profile]]:
    r"""
    Optional :mod:`cProfile` block around segment building.

    Parameters
    ----------
    enable : bool, default: False
        If ``False`` the context is a no-op and yields ``None``.
    sort : str, default: ``"tottime"``
        One of ``tottime, cumtime, calls, ncalls, name, file``; unknown keys
        fall back to ``tottime``.
    limit : int or None, default: 25
        Rows printed; ``None`` prints everything.
    out_path : str, optional
        Write the text report to this file instead of logging/printing it.
    logger : logging.Logger, optional
        Emit the report via ``logger.info`` when ``out_path`` is not set.

    Yields
    ------
    cProfile.Profile or None

    Examples
    --------
    >>> with prof(True, sort="cumtime", limit=10):
    ...     builder.run(chamber, hits)
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
        ps = pstats.Stats(pr, stream=s).strip_dirs()
        ps.sort_stats(_SORT_KEYS.get(str(sort).lower(), pstats.SortKey.TIME))
        ps.print_stats(limit if limit is not None else 1_000_000)
        text = f"[prof] elapsed={elapsed:.6f}s sort={sort} limit={limit}\n" + s.getvalue()

        if out_path:
            with open(out_path, "w", encoding="utf-8") as f:
                f.write(text)
        elif logger is not None:
            logger.info(text)
        else:
            print(text, end="")
