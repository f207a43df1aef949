from __future__ import annotations

import logging
from pathlib import Path
from typing import Dict, List, Mapping, Sequence, Union

import numpy as np
import orjson
import pandas as pd

from segment_reco.builder import Segment
from segment_reco.geometry import PlanarChamber
from segment_reco.hits import Hit

logger = logging.getLogger(__name__)

HIT_COLUMNS = ("chamber_id", "layer", "u", "v", "cov_uu", "cov_uv", "cov_vv")


def hits_from_frame(df: pd.DataFrame) -> Dict[str, List[Hit]]:
    r"""
    Group a hit table into per-chamber :class:`~segment_reco.hits.Hit` lists.

    Parameters
    ----------
    df : pandas.DataFrame
        Columns ``chamber_id, layer, u, v, cov_uu, cov_uv, cov_vv`` and an
        optional integer ``hit_id``. The frame is not modified.

    Returns
    -------
    dict[str, list of Hit]
        Keyed by ``str(chamber_id)``; hits keep their row order.

    Raises
    ------
    ValueError
        If a required column is missing.
    """
    missing = [c for c in HIT_COLUMNS if c not in df.columns]
    if missing:
        raise ValueError(f"hit table is missing columns: {', '.join(missing)}")

    chambers: Dict[str, List[Hit]] = {}
    has_id = "hit_id" in df.columns
    for chamber_id, grp in df.groupby("chamber_id", sort=False):
        layer = grp["layer"].to_numpy(dtype=np.int64)
        pos = grp[["u", "v"]].to_numpy(dtype=np.float64)
        cov = grp[["cov_uu", "cov_uv", "cov_vv"]].to_numpy(dtype=np.float64)
        ids = grp["hit_id"].to_numpy(dtype=np.int64) if has_id else [None] * len(grp)
        chambers[str(chamber_id)] = [
            Hit(int(layer[k]), (pos[k, 0], pos[k, 1]), (cov[k, 0], cov[k, 1], cov[k, 2]),
                None if ids[k] is None else int(ids[k]))
            for k in range(len(grp))
        ]
    return chambers


def load_hits(path: Union[str, Path]) -> Dict[str, List[Hit]]:
    """Read a CSV hit table (see :func:`hits_from_frame`)."""
    df = pd.read_csv(path)
    logger.debug("Read %d hits from %s", len(df), path)
    return hits_from_frame(df)


def load_chambers(path: Union[str, Path]) -> Dict[str, PlanarChamber]:
    r"""
    Read chamber geometry from JSON.

    The document maps chamber id to a :meth:`PlanarChamber.from_dict`
    payload, e.g. ``{"1": {"layer_z": [0, 1, 2, 3, 4, 5], "origin": [0, 200, 700]}}``.

    Raises
    ------
    ValueError
        If the file cannot be parsed or an entry is malformed.
    """
    path = Path(path)
    try:
        doc = orjson.loads(path.read_bytes())
    except (OSError, orjson.JSONDecodeError) as e:
        raise ValueError(f"Failed to parse {path}: {e}") from e
    if not isinstance(doc, dict):
        raise ValueError(f"{path} must map chamber ids to chamber descriptions")
    return {str(k): PlanarChamber.from_dict(v) for k, v in doc.items()}


def segments_to_frame(segments: Mapping[str, Sequence[Segment]]) -> pd.DataFrame:
    r"""
    Flatten reconstructed segments into one row per segment.

    Columns: ``chamber_id, segment, n_hits, hit_ids, layers, u0, v0, dir_u,
    dir_v, dir_z, chi2, dof, prob`` and the error-matrix diagonal
    ``var_slope_u, var_slope_v, var_u0, var_v0``.
    """
    rows = []
    for chamber_id, segs in segments.items():
        for k, seg in enumerate(segs):
            err = np.diag(seg.error_matrix)
            rows.append({
                "chamber_id": chamber_id,
                "segment": k,
                "n_hits": seg.n_hits,
                "hit_ids": " ".join("" if h.hit_id is None else str(h.hit_id) for h in seg.hits),
                "layers": " ".join(str(layer) for layer in seg.layers),
                "u0": float(seg.intercept[0]),
                "v0": float(seg.intercept[1]),
                "dir_u": float(seg.direction[0]),
                "dir_v": float(seg.direction[1]),
                "dir_z": float(seg.direction[2]),
                "chi2": seg.chi2,
                "dof": seg.degrees_of_freedom,
                "prob": seg.chi2_probability,
                "var_slope_u": float(err[0]),
                "var_slope_v": float(err[1]),
                "var_u0": float(err[2]),
                "var_v0": float(err[3]),
            })
    columns = ["chamber_id", "segment", "n_hits", "hit_ids", "layers", "u0", "v0",
               "dir_u", "dir_v", "dir_z", "chi2", "dof", "prob",
               "var_slope_u", "var_slope_v", "var_u0", "var_v0"]
    return pd.DataFrame(rows, columns=columns)
