from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Iterator, List, Optional, Sequence, Tuple

import numpy as np

from segment_reco.config import SegmentConfig
from segment_reco.fitter import fit_line
from segment_reco.geometry import ChamberGeometry
from segment_reco.hits import Hit, normalize_hit_order

logger = logging.getLogger(__name__)

TWO_PI = 2.0 * np.pi


@dataclass(slots=True)
class ProtoSegment:
    r"""
    Mutable line hypothesis grown from a seed pair.

    Attributes
    ----------
    hits : list of Hit
        Member hits in insertion order.
    u0, v0 : float
        Intercept at chamber :math:`z=0`.
    slope_u, slope_v : float
        :math:`du/dz`, :math:`dv/dz`.
    chi2 : float
        Chi-square of the last fit.
    direction : ndarray or None
        Unit direction in the chamber frame, set when the segment is finalized.
    """
    hits: List[Hit] = field(default_factory=list)
    u0: float = 0.0
    v0: float = 0.0
    slope_u: float = 0.0
    slope_v: float = 0.0
    chi2: float = 0.0
    direction: Optional[np.ndarray] = None

    def clear(self) -> None:
        self.hits.clear()
        self.u0 = self.v0 = 0.0
        self.slope_u = self.slope_v = 0.0
        self.chi2 = 0.0
        self.direction = None

    def has_hit_on_layer(self, layer: int) -> bool:
        return any(h.layer == layer for h in self.hits)

    def add_hit(self, hit: Hit) -> bool:
        """Append ``hit``; ``False`` if this very hit is already a member."""
        if any(h is hit for h in self.hits):
            return False
        self.hits.append(hit)
        return True

    def remove_layer(self, layer: int) -> None:
        self.hits = [h for h in self.hits if h.layer != layer]

    def predict(self, z: float) -> Tuple[float, float]:
        return self.u0 + self.slope_u * z, self.v0 + self.slope_v * z

    def snapshot(self) -> "ProtoSegment":
        direction = None if self.direction is None else self.direction.copy()
        return ProtoSegment(list(self.hits), self.u0, self.v0,
                            self.slope_u, self.slope_v, self.chi2, direction)

    def restore(self, snap: "ProtoSegment") -> None:
        self.hits = list(snap.hits)
        self.u0, self.v0 = snap.u0, snap.v0
        self.slope_u, self.slope_v = snap.slope_u, snap.slope_v
        self.chi2 = snap.chi2
        self.direction = None if snap.direction is None else snap.direction.copy()


@dataclass(slots=True)
class SearchContext:
    r"""
    Private working state of one chamber invocation.

    Holds the canonically ordered hit list with its parallel layer index, the
    used-hit flags, the proto-segment under construction and the deferred
    same-layer candidates. A context is created per chamber and handed
    through the search by exclusive ownership; nothing in it is shared.

    Attributes
    ----------
    geometry : ChamberGeometry
    hits : list of Hit
    layers : ndarray of int64
        ``layers[k]`` is the layer of ``hits[k]``.
    used : ndarray of bool
        Set once a hit went into an accepted segment (or was close to one);
        never cleared.
    proto : ProtoSegment
    close_hits : list of Hit
        Near hits whose layer was already occupied, in discovery order.
    duplicate_add_attempts : int
        Number of rejected attempts to re-add a member hit.
    """
    geometry: ChamberGeometry
    hits: List[Hit]
    layers: np.ndarray
    used: np.ndarray
    proto: ProtoSegment = field(default_factory=ProtoSegment)
    close_hits: List[Hit] = field(default_factory=list)
    duplicate_add_attempts: int = 0

    @classmethod
    def create(cls, geometry: ChamberGeometry, hits: Sequence[Hit]) -> "SearchContext":
        ordered, layers = normalize_hit_order(hits, [h.layer for h in hits], geometry)
        return cls(geometry, ordered, layers, np.zeros(len(ordered), dtype=bool))

    @property
    def n_unused(self) -> int:
        return int(self.used.size - np.count_nonzero(self.used))

    def flag_hits_as_used(self) -> None:
        r"""
        Mark proto-segment members and deferred close hits as used.

        Matching is by identity against the working list; the flags are never
        reset, so these hits cannot seed or extend later segments.
        """
        for group in (self.proto.hits, self.close_hits):
            for h in group:
                for k, candidate in enumerate(self.hits):
                    if candidate is h:
                        self.used[k] = True


class CandidateSearch:
    r"""
    Seed-pair generation, proximity-based extension and same-layer conflict
    resolution for straight-line segments.

    Parameters
    ----------
    config : SegmentConfig
        Thresholds; read-only.

    Notes
    -----
    The search is stateless apart from its configuration. All mutable state
    lives in the :class:`SearchContext` passed to each method, so one
    instance can serve several chambers.
    """

    __slots__ = ("config", "log")

    def __init__(self, config: SegmentConfig):
        self.config = config
        self.log = logging.getLogger(self.__class__.__name__)

    # ----- seeds -----

    def seed_slopes(self, ctx: SearchContext, i: int, j: int) -> Tuple[float, float]:
        r"""
        Raw slopes between hits ``i`` and ``j``.

        Both hits are projected layer → global → chamber frame and

        .. math::

            s_u = \frac{u_j - u_i}{\Delta z_g}, \qquad
            s_v = \frac{v_j - v_i}{\Delta z_g},

        with :math:`\Delta z_g` the gap in global depth.
        """
        geo = ctx.geometry
        h1, h2 = ctx.hits[i], ctx.hits[j]
        gp1 = geo.layer_to_global(h1.layer, h1.local_position)
        gp2 = geo.layer_to_global(h2.layer, h2.local_position)
        lp1, lp2 = geo.to_local(gp1), geo.to_local(gp2)
        dz = float(gp2[2] - gp1[2])
        if dz == 0.0:
            return float("inf"), float("inf")
        return float((lp2[0] - lp1[0]) / dz), float((lp2[1] - lp1[1]) / dz)

    def seed_pairs(self, ctx: SearchContext) -> Iterator[Tuple[int, int, float, float]]:
        r"""
        Yield admissible seed pairs ``(i, j, slope_u, slope_v)``.

        ``i`` scans forward over the working list and ``j`` backward from the
        last hit down to index 1. A pair is skipped when either hit is used,
        when ``layers[j] - layers[i] < min_layers_apart``, or when the raw
        slopes exceed ``tan_phi_max`` (u) or ``tan_theta_max`` (v).

        Used flags are read lazily, so hits consumed by a segment accepted
        between two yields are skipped from then on.
        """
        cfg = self.config
        n = len(ctx.hits)
        for i in range(n):
            for j in range(n - 1, 0, -1):
                if ctx.used[i]:
                    break
                if j == i or ctx.used[j]:
                    continue
                if ctx.layers[j] - ctx.layers[i] < cfg.min_layers_apart:
                    continue
                su, sv = self.seed_slopes(ctx, i, j)
                if abs(sv) > cfg.tan_theta_max or abs(su) > cfg.tan_phi_max:
                    continue
                yield i, j, su, sv

    def start_proto_segment(self, ctx: SearchContext, i: int, j: int,
                            slope_u: float, slope_v: float) -> None:
        r"""
        Reset the proto-segment to the seed pair with provisional parameters.

        The provisional intercept is the first seed's layer-local position.
        """
        proto = ctx.proto
        proto.clear()
        proto.u0, proto.v0 = ctx.hits[i].local_position
        proto.slope_u, proto.slope_v = slope_u, slope_v
        proto.add_hit(ctx.hits[i])
        proto.add_hit(ctx.hits[j])

    # ----- extension -----

    def update_parameters(self, ctx: SearchContext) -> None:
        """Refit the proto-segment and store intercept, slopes and chi-square."""
        fit = fit_line(ctx.proto.hits, ctx.geometry)
        proto = ctx.proto
        proto.u0, proto.v0 = fit.u0, fit.v0
        proto.slope_u, proto.slope_v = fit.slope_u, fit.slope_v
        proto.chi2 = fit.chi2

    def is_hit_near_segment(self, ctx: SearchContext, hit: Hit) -> bool:
        r"""
        Two-tier azimuthal proximity test between ``hit`` and the proto-segment.

        With :math:`\phi_h` the global azimuth of the hit and :math:`\phi_s`,
        :math:`R` the azimuth and transverse radius of the segment prediction at
        the hit's chamber depth (both azimuths in :math:`[0, 2\pi)`):

        .. math::

            \Delta\phi = |\phi_s - \phi_h| \text{ after one } \pm 2\pi
            \text{ correction into } (-2\pi, 2\pi),

        and the hit is near iff :math:`R\,\Delta\phi < d_{r\phi}` and
        :math:`\Delta\phi < d_\phi`.

        Notes
        -----
        The correction does not fold :math:`\Delta\phi` into
        :math:`(-\pi, \pi)`; the thresholds are tuned against this form.
        """
        geo = ctx.geometry
        hg = geo.layer_to_global(hit.layer, hit.local_position)
        h_phi = float(np.arctan2(hg[1], hg[0]))
        if h_phi < 0.0:
            h_phi += TWO_PI
        z = float(geo.to_local(hg)[2])

        u, v = ctx.proto.predict(z)
        sg = geo.to_global((u, v, z))
        s_phi = float(np.arctan2(sg[1], sg[0]))
        if s_phi < 0.0:
            s_phi += TWO_PI
        R = float(np.hypot(sg[0], sg[1]))

        d_phi = s_phi - h_phi
        if d_phi > TWO_PI:
            d_phi -= TWO_PI
        if d_phi < -TWO_PI:
            d_phi += TWO_PI
        d_phi = abs(d_phi)

        return R * d_phi < self.config.d_rphi_fine_max and d_phi < self.config.d_phi_fine_max

    def try_adding_hits(self, ctx: SearchContext, i: int, j: int) -> None:
        r"""
        Extend the seeded proto-segment with nearby unused hits.

        Every hit other than the two seeds is tested once with
        :meth:`is_hit_near_segment`. A near hit on a free layer joins
        directly; one on an occupied layer is deferred to
        ``ctx.close_hits``. When the segment has at least three hits and
        something was deferred, it is refitted and each deferred hit is
        offered to :meth:`compare_proto_segment` in discovery order.
        """
        ctx.close_hits.clear()
        proto = ctx.proto
        for k, h in enumerate(ctx.hits):
            if k == i or k == j or ctx.used[k]:
                continue
            if not self.is_hit_near_segment(ctx, h):
                continue
            if proto.has_hit_on_layer(h.layer):
                ctx.close_hits.append(h)
            else:
                proto.add_hit(h)

        if len(proto.hits) < 3 or not ctx.close_hits:
            return
        self.update_parameters(ctx)

        for h in ctx.close_hits:
            self.compare_proto_segment(ctx, h)

    def compare_proto_segment(self, ctx: SearchContext, hit: Hit) -> None:
        r"""
        Try ``hit`` in place of the member on its layer; keep it if the
        chi-square does not increase.

        The full proto-segment state is snapshotted first. On a failed add or a
        larger chi-square the snapshot is restored exactly, so the chi-square
        after this call is never above the one before.
        """
        proto = ctx.proto
        old = proto.snapshot()

        proto.remove_layer(hit.layer)
        ok = proto.add_hit(hit)
        if ok:
            self.update_parameters(ctx)
        else:
            ctx.duplicate_add_attempts += 1
            self.log.debug("hit on layer %d is already part of the proto-segment", hit.layer)

        if proto.chi2 > old.chi2 or not ok:
            proto.restore(old)
