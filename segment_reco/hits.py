from __future__ import annotations

from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple

import numpy as np

from segment_reco.geometry import ChamberGeometry


@dataclass(frozen=True, eq=False, slots=True)
class Hit:
    r"""
    A single 2D position measurement on one chamber layer.

    Hits compare and hash by **identity** (``eq=False``): two hits with the
    same coordinates are still different measurements. Membership tests in
    proto-segments and the used-hit bookkeeping rely on this.

    Attributes
    ----------
    layer : int
        Layer number ``1..L``.
    local_position : tuple of float
        :math:`(u, v)` in the layer frame.
    local_covariance : tuple of float
        Symmetric position covariance as ``(xx, xy, yy)``.
    hit_id : int, optional
        Free-form label carried through I/O; not used by the algorithm.
    """
    layer: int
    local_position: Tuple[float, float]
    local_covariance: Tuple[float, float, float]
    hit_id: Optional[int] = None

    def __post_init__(self) -> None:
        pos = tuple(float(x) for x in self.local_position)
        cov = tuple(float(x) for x in self.local_covariance)
        if len(pos) != 2:
            raise ValueError(f"local_position needs 2 values, got {len(pos)}")
        if len(cov) != 3:
            raise ValueError(f"local_covariance needs (xx, xy, yy), got {len(cov)} values")
        object.__setattr__(self, "layer", int(self.layer))
        object.__setattr__(self, "local_position", pos)
        object.__setattr__(self, "local_covariance", cov)

    def covariance_matrix(self) -> np.ndarray:
        """Full symmetric 2x2 covariance."""
        xx, xy, yy = self.local_covariance
        return np.array([[xx, xy], [xy, yy]], dtype=np.float64)


def covariance_array(hits: Sequence[Hit]) -> np.ndarray:
    r"""
    Stack hit covariances into a contiguous ``(n, 3)`` array of ``(xx, xy, yy)``.
    """
    if not hits:
        return np.empty((0, 3), dtype=np.float64)
    return np.ascontiguousarray([h.local_covariance for h in hits], dtype=np.float64)


def chamber_points(hits: Sequence[Hit], geometry: ChamberGeometry) -> np.ndarray:
    r"""
    Chamber-frame coordinates :math:`(u, v, z)` of each hit, shape ``(n, 3)``.

    Every call goes back through the geometry service; nothing is cached.
    """
    out = np.empty((len(hits), 3), dtype=np.float64)
    for k, h in enumerate(hits):
        out[k] = geometry.hit_to_chamber(h.layer, h.local_position)
    return out


def stacking_is_descending(geometry: ChamberGeometry) -> bool:
    r"""
    Whether the canonical hit order runs from the last layer to the first.

    With :math:`z_1` and :math:`z_L` the global depths of the first and last
    layers, the order is reversed when layer 1 is the one farther from the
    origin:

    .. math::

        (z_1 > 0 \wedge z_1 > z_L) \;\vee\; (z_1 < 0 \wedge z_1 < z_L).
    """
    z1, zL = geometry.depth_range()
    if z1 > 0.0:
        return z1 > zL
    if z1 < 0.0:
        return z1 < zL
    return False


def normalize_hit_order(hits: Sequence[Hit],
                        layers: Sequence[int],
                        geometry: ChamberGeometry) -> Tuple[List[Hit], np.ndarray]:
    r"""
    Put a chamber's hits and their parallel layer index into canonical order.

    Input is expected in ascending layer order. When
    :func:`stacking_is_descending` holds, both sequences are reversed
    together; nothing is sorted, so hits sharing a layer also swap their
    relative order. A list whose first layer is already above its last is
    left alone, which makes the function a no-op on its own output.

    Parameters
    ----------
    hits : sequence of Hit
        Raw per-chamber hits.
    layers : sequence of int
        Layer number of each hit, aligned with ``hits``.
    geometry : ChamberGeometry
        Chamber used to decide the stacking direction.

    Returns
    -------
    hits_ordered : list of Hit
    layers_ordered : ndarray of int64

    Notes
    -----
    Fewer than three hits are returned in their input order: such chambers
    cannot produce a segment and are not reordered.
    """
    hits = list(hits)
    layers = np.asarray(layers, dtype=np.int64).reshape(-1)
    if layers.size != len(hits):
        raise ValueError(f"{len(hits)} hits but {layers.size} layer indices")
    if len(hits) < 3:
        return hits, layers.copy()

    if stacking_is_descending(geometry) and layers[0] < layers[-1]:
        return hits[::-1], layers[::-1].copy()
    return hits, layers.copy()
