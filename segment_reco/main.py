#!/usr/bin/env python3
r"""
Chamber segment reconstruction runner.

Loads a hit table and the chamber geometry, runs :class:`SegmentBuilder` on
every chamber and writes one row per reconstructed segment.

Input formats
-------------
- **Hits** (CSV): ``chamber_id, layer, u, v, cov_uu, cov_uv, cov_vv`` and an
  optional ``hit_id``. Positions are layer-local, covariances are the
  ``(xx, xy, yy)`` entries of the 2x2 position covariance.
- **Geometry** (JSON): ``{chamber_id: {"layer_z": [...], "origin": [x, y, z],
  "rotation_deg": a}}``, see :class:`segment_reco.geometry.PlanarChamber`.
- **Config** (JSON, optional): :class:`segment_reco.config.SegmentConfig`
  fields, flat or under ``"segment_config"``.

Typical usage:

.. code-block:: bash

   segment-reco --hits hits.csv --geometry chambers.json --out segments.csv
   segment-reco --hits hits.csv --geometry chambers.json --config cfg.json --plot -v
"""

from __future__ import annotations

import argparse
import logging
import os
import time
from pathlib import Path
from typing import Dict, List, Optional, Sequence

from segment_reco.builder import Segment, SegmentBuilder
from segment_reco.config import SegmentConfig, load_config
from segment_reco.data import load_chambers, load_hits, segments_to_frame
from segment_reco.profiling import prof


def build_parser() -> argparse.ArgumentParser:
    r"""
    Construct the command-line interface.

    Returns
    -------
    argparse.ArgumentParser
    """
    p = argparse.ArgumentParser(description="Reconstruct straight-line segments in layered chambers.")
    p.add_argument("--hits", type=str, required=True,
                   help="CSV hit table (chamber_id, layer, u, v, cov_uu, cov_uv, cov_vv[, hit_id]).")
    p.add_argument("--geometry", type=str, required=True,
                   help="JSON chamber geometry keyed by chamber_id.")
    p.add_argument("--config", type=str, default=None,
                   help="JSON segment config (default: built-in thresholds).")
    p.add_argument("-o", "--out", type=str, default=None,
                   help="Write the segment table to this CSV file.")
    p.add_argument("--plot", action="store_true", default=False,
                   help="Show u-z / v-z projections per chamber (default: False).")
    p.add_argument("--plot-dir", type=str, default=None,
                   help="Save per-chamber plots as PNG into this directory.")
    p.add_argument("--profile", action="store_true", default=False,
                   help="Enable cProfile around segment building.")
    p.add_argument("--profile-out", type=str, default=None,
                   help="If set, write pstats text to this file.")
    p.add_argument("-v", "--verbose", action="store_true",
                   help="Enable verbose logging.")
    return p


def setup_logging(verbose: bool = False) -> None:
    r"""
    Configure process-wide logging.

    Parameters
    ----------
    verbose : bool, optional
        If ``True``, set level to ``DEBUG``; otherwise ``INFO``.
    """
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s | %(levelname)-8s | %(message)s",
        datefmt="%H:%M:%S",
    )


def apply_plotting_guard(enable_plots: bool) -> None:
    r"""
    Force the non-interactive ``Agg`` backend when plots are not shown.

    Must run before :mod:`matplotlib.pyplot` is imported.
    """
    if enable_plots:
        return
    os.environ.setdefault("MPLBACKEND", "Agg")
    import matplotlib
    matplotlib.use("Agg", force=True)
    import matplotlib.pyplot as _plt  # noqa: WPS433
    _plt.ioff()
    _plt.show = lambda *a, **k: None  # type: ignore[assignment]


def main(argv: Optional[Sequence[str]] = None) -> Dict[str, List[Segment]]:
    r"""
    End-to-end run: **load → build per chamber → report → write**.

    Parameters
    ----------
    argv : sequence of str, optional
        Arguments instead of ``sys.argv[1:]``.

    Returns
    -------
    dict[str, list of Segment]
        Segments per chamber id.

    Raises
    ------
    KeyError
        If a chamber in the hit table has no geometry entry.
    """
    args = build_parser().parse_args(argv)
    setup_logging(args.verbose)
    apply_plotting_guard(args.plot)

    if args.config:
        logging.info("Reading config from %s", args.config)
        config = load_config(Path(args.config))
    else:
        config = SegmentConfig()

    logging.info("Loading hits from %s", args.hits)
    hits_by_chamber = load_hits(args.hits)
    chambers = load_chambers(args.geometry)
    missing = sorted(set(hits_by_chamber) - set(chambers))
    if missing:
        raise KeyError(f"No geometry for chambers: {', '.join(missing)}")

    builder = SegmentBuilder(config)
    results: Dict[str, List[Segment]] = {}

    t0 = time.time()
    with prof(args.profile, out_path=args.profile_out):
        for chamber_id, hits in hits_by_chamber.items():
            segs = builder.run(chambers[chamber_id], hits)
            results[chamber_id] = segs
            logging.info("Chamber %s: %d hits -> %d segments", chamber_id, len(hits), len(segs))
    t1 = time.time()

    n_segments = sum(len(s) for s in results.values())
    logging.info("Built %d segments in %d chambers (%.3f s)", n_segments, len(results), t1 - t0)

    if args.plot or args.plot_dir:
        import segment_reco.plotting as seg_plot  # noqa: WPS433
        if args.plot_dir:
            Path(args.plot_dir).mkdir(parents=True, exist_ok=True)
        for chamber_id, segs in results.items():
            save = str(Path(args.plot_dir) / f"chamber_{chamber_id}.png") if args.plot_dir else None
            seg_plot.plot_chamber_segments(hits_by_chamber[chamber_id], segs, chambers[chamber_id],
                                           title=f"Chamber {chamber_id}", show=args.plot, save_path=save)

    if args.out:
        segments_to_frame(results).to_csv(args.out, index=False)
        logging.info("Wrote segment table to %s", args.out)

    return results


def run() -> None:
    """Console-script entry point."""
    main()


if __name__ == "__main__":
    run()
