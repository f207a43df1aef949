from __future__ import annotations

import abc
from typing import Any, Mapping, Sequence, Tuple

import numpy as np


class ChamberGeometry(abc.ABC):
    r"""
    Read-only geometry service for one chamber.

    A chamber is a stack of :math:`L` parallel measurement layers. Every hit is
    measured in its **layer frame** as a 2D point :math:`(u, v)` (layer-local
    :math:`z=0`). All fitting happens in the **chamber frame**, where a point is
    :math:`(u, v, z)` and :math:`z` runs along the stacking axis. The geometry
    service translates between the layer frames, the chamber frame and the
    global frame.

    Implementations must be pure queries: segment building shares one geometry
    instance across calls and never mutates it.

    Notes
    -----
    Layers are numbered ``1..layer_count``.
    """

    @property
    @abc.abstractmethod
    def layer_count(self) -> int:
        """Number of layers in the chamber."""

    @abc.abstractmethod
    def layer_position(self, layer: int) -> np.ndarray:
        r"""
        Global position of the centre of ``layer``.

        Returns
        -------
        ndarray, shape (3,)
        """

    @abc.abstractmethod
    def layer_to_global(self, layer: int, local_point: Sequence[float]) -> np.ndarray:
        r"""
        Map a layer-local 2D point :math:`(u, v)` to a global 3D point.
        """

    @abc.abstractmethod
    def to_local(self, global_point: Sequence[float]) -> np.ndarray:
        r"""
        Map a global 3D point into the chamber frame.
        """

    @abc.abstractmethod
    def to_global(self, local_point: Sequence[float]) -> np.ndarray:
        r"""
        Map a chamber-frame 3D point to global coordinates.
        """

    @abc.abstractmethod
    def to_global_vector(self, local_vector: Sequence[float]) -> np.ndarray:
        r"""
        Rotate a chamber-frame direction into the global frame (no translation).
        """

    def hit_to_chamber(self, layer: int, local_point: Sequence[float]) -> np.ndarray:
        r"""
        Layer-local :math:`(u, v)` → chamber-frame :math:`(u, v, z)`.

        Convenience composition of :meth:`layer_to_global` and :meth:`to_local`,
        the path every fit and proximity test goes through.
        """
        return self.to_local(self.layer_to_global(layer, local_point))

    def depth_range(self) -> Tuple[float, float]:
        """Global :math:`z` of the first and the last layer."""
        return float(self.layer_position(1)[2]), float(self.layer_position(self.layer_count)[2])


class PlanarChamber(ChamberGeometry):
    r"""
    Rigid planar chamber: parallel layers at fixed chamber-frame depths.

    The chamber frame is obtained from the global frame by a translation to
    ``origin`` and a rotation by ``rotation_deg`` about the global :math:`z`
    axis:

    .. math::

        \mathbf{g} \;=\; \mathbf{o} + R_z(\alpha)\,\mathbf{l},
        \qquad
        \mathbf{l} \;=\; R_z(\alpha)^\top (\mathbf{g} - \mathbf{o}).

    Layer :math:`k` sits at chamber depth ``layer_z[k-1]`` and shares the
    chamber orientation, so a layer-local point :math:`(u, v)` is the chamber
    point :math:`(u, v, z_k)`.

    Parameters
    ----------
    layer_z : sequence of float
        Chamber-frame depth of each layer, indexed by ``layer - 1``.
    origin : sequence of float, optional
        Global position of the chamber-frame origin. Default ``(0, 0, 0)``.
    rotation_deg : float, optional
        Rotation of the chamber frame about global :math:`z` (degrees).
    dtype : numpy dtype, optional
        Internal dtype (default ``float64``).

    Raises
    ------
    ValueError
        If ``layer_z`` is empty or ``origin`` does not have three components.
    """

    __slots__ = ("layer_z", "origin", "rotation_deg", "dtype", "_R")

    def __init__(self,
                 layer_z: Sequence[float],
                 origin: Sequence[float] = (0.0, 0.0, 0.0),
                 rotation_deg: float = 0.0,
                 dtype: np.dtype = np.float64):
        self.dtype = np.dtype(dtype)
        self.layer_z = np.asarray(layer_z, dtype=self.dtype).reshape(-1)
        if self.layer_z.size == 0:
            raise ValueError("layer_z must list at least one layer depth")
        self.origin = np.asarray(origin, dtype=self.dtype).reshape(-1)
        if self.origin.shape != (3,):
            raise ValueError(f"origin must have 3 components, got {self.origin.shape[0]}")
        self.rotation_deg = float(rotation_deg)

        a = np.deg2rad(self.rotation_deg)
        c, s = np.cos(a), np.sin(a)
        self._R = np.array([[c, -s, 0.0],
                            [s,  c, 0.0],
                            [0.0, 0.0, 1.0]], dtype=self.dtype)

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "PlanarChamber":
        r"""
        Build a chamber from a JSON-style mapping.

        Expected keys: ``layer_z`` (required), ``origin`` and ``rotation_deg``
        (optional).
        """
        if "layer_z" not in payload:
            raise ValueError("chamber description is missing 'layer_z'")
        return cls(
            layer_z=payload["layer_z"],
            origin=payload.get("origin", (0.0, 0.0, 0.0)),
            rotation_deg=payload.get("rotation_deg", 0.0),
        )

    @property
    def layer_count(self) -> int:
        return int(self.layer_z.size)

    def _check_layer(self, layer: int) -> int:
        layer = int(layer)
        if not 1 <= layer <= self.layer_count:
            raise ValueError(f"layer {layer} outside 1..{self.layer_count}")
        return layer

    def layer_position(self, layer: int) -> np.ndarray:
        layer = self._check_layer(layer)
        return self.to_global((0.0, 0.0, self.layer_z[layer - 1]))

    def layer_to_global(self, layer: int, local_point: Sequence[float]) -> np.ndarray:
        layer = self._check_layer(layer)
        u, v = float(local_point[0]), float(local_point[1])
        return self.to_global((u, v, self.layer_z[layer - 1]))

    def to_local(self, global_point: Sequence[float]) -> np.ndarray:
        g = np.asarray(global_point, dtype=self.dtype)
        return self._R.T @ (g - self.origin)

    def to_global(self, local_point: Sequence[float]) -> np.ndarray:
        l = np.asarray(local_point, dtype=self.dtype)
        return self.origin + self._R @ l

    def to_global_vector(self, local_vector: Sequence[float]) -> np.ndarray:
        return self._R @ np.asarray(local_vector, dtype=self.dtype)

    def __repr__(self) -> str:
        return (f"PlanarChamber(layers={self.layer_count}, origin={self.origin.tolist()}, "
                f"rotation_deg={self.rotation_deg})")
