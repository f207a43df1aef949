from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple

import numpy as np
from scipy import stats

from segment_reco.config import SegmentConfig
from segment_reco.fitter import calculate_error
from segment_reco.geometry import ChamberGeometry
from segment_reco.hits import Hit
from segment_reco.search import CandidateSearch, SearchContext


@dataclass(frozen=True, slots=True)
class Segment:
    r"""
    Immutable straight-line segment reconstructed in one chamber.

    Attributes
    ----------
    hits : tuple of Hit
        Member hits, at most one per layer.
    intercept : ndarray, shape (3,)
        Chamber-frame point :math:`(u_0, v_0, 0)`.
    direction : ndarray, shape (3,)
        Chamber-frame unit direction, oriented away from the origin along the
        global depth axis.
    error_matrix : ndarray, shape (4, 4)
        Parameter covariance ordered :math:`(s_u, s_v, u_0, v_0)` on the
        diagonal blocks.
    chi2 : float
        Fit chi-square.

    Notes
    -----
    The arrays are made read-only on construction.
    """
    hits: Tuple[Hit, ...]
    intercept: np.ndarray
    direction: np.ndarray
    error_matrix: np.ndarray
    chi2: float

    def __post_init__(self) -> None:
        object.__setattr__(self, "hits", tuple(self.hits))
        for name in ("intercept", "direction", "error_matrix"):
            arr = np.array(getattr(self, name), dtype=np.float64)
            arr.setflags(write=False)
            object.__setattr__(self, name, arr)
        object.__setattr__(self, "chi2", float(self.chi2))

    @property
    def n_hits(self) -> int:
        return len(self.hits)

    @property
    def layers(self) -> Tuple[int, ...]:
        return tuple(h.layer for h in self.hits)

    @property
    def degrees_of_freedom(self) -> int:
        """Two measurements per hit minus four line parameters."""
        return 2 * len(self.hits) - 4

    @property
    def chi2_probability(self) -> float:
        r"""
        Upper-tail probability :math:`P(\chi^2_{\nu} \ge \chi^2)`; ``nan`` when
        :math:`\nu \le 0`.
        """
        dof = self.degrees_of_freedom
        if dof <= 0:
            return float("nan")
        return float(stats.chi2.sf(self.chi2, dof))


def min_hits_required(base: int, n_hits_in_chamber: int) -> int:
    r"""
    Adaptive minimum segment size: ``base`` plus one above 20 chamber hits
    and one more above 30.
    """
    extra = 0
    if n_hits_in_chamber > 20:
        extra += 1
    if n_hits_in_chamber > 30:
        extra += 1
    return int(base) + extra


class SegmentBuilder:
    r"""
    Build straight-line segments from the hits of one chamber.

    For every admissible seed pair (:meth:`CandidateSearch.seed_pairs`) the
    proto-segment is grown with :meth:`CandidateSearch.try_adding_hits`.
    Proto-segments with at least :func:`min_hits_required` hits are refitted,
    given a direction and an error matrix, and emitted as :class:`Segment`;
    their hits, together with the deferred close hits, are then flagged used.

    Building stops early once ``max_segments`` segments exist or fewer than
    ``min_remaining_hits`` hits are still unused.

    Parameters
    ----------
    config : SegmentConfig, optional
        Thresholds; defaults to :class:`SegmentConfig()`.

    Notes
    -----
    The builder keeps no per-chamber state, so a single instance may process
    chambers concurrently.
    """

    __slots__ = ("config", "search", "log")

    def __init__(self, config: Optional[SegmentConfig] = None):
        self.config = config or SegmentConfig()
        self.search = CandidateSearch(self.config)
        self.log = logging.getLogger(self.__class__.__name__)

    def run(self, geometry: ChamberGeometry, hits: Sequence[Hit]) -> List[Segment]:
        r"""
        Reconstruct the segments of one chamber.

        Parameters
        ----------
        geometry : ChamberGeometry
            Chamber the hits belong to.
        hits : sequence of Hit
            All hits of the chamber, in any order.

        Returns
        -------
        list of Segment
            In discovery order. Empty when fewer than three hits are given or
            no seed pair grows into a large enough segment.
        """
        segments, _ = self.run_with_context(geometry, hits)
        return segments

    def run_with_context(self, geometry: ChamberGeometry,
                         hits: Sequence[Hit]) -> Tuple[List[Segment], Optional[SearchContext]]:
        """
        Same as :meth:`run`, also returning the working context for inspection
        (``None`` when the chamber has fewer than three hits).
        """
        cfg = self.config
        segments: List[Segment] = []
        n_hits = len(hits)
        if n_hits < 3:
            return segments, None

        ctx = SearchContext.create(geometry, hits)
        required = min_hits_required(cfg.min_hits_per_segment, n_hits)

        for i, j, su, sv in self.search.seed_pairs(ctx):
            self.search.start_proto_segment(ctx, i, j, su, sv)
            self.search.try_adding_hits(ctx, i, j)

            if len(ctx.proto.hits) < required:
                if cfg.debug:
                    self.log.debug("seed (%d, %d): %d hits < %d required, rejected",
                                   i, j, len(ctx.proto.hits), required)
                continue

            segment = self._finalize(ctx)
            segments.append(segment)
            ctx.flag_hits_as_used()
            if cfg.debug:
                self.log.debug("seed (%d, %d): segment %d with %d hits, chi2=%.3f",
                               i, j, len(segments), segment.n_hits, segment.chi2)

            if len(segments) >= cfg.max_segments or ctx.n_unused < cfg.min_remaining_hits:
                break

        return segments, ctx

    def _finalize(self, ctx: SearchContext) -> Segment:
        r"""
        Final refit, oriented direction and error matrix of the proto-segment.

        The local direction is

        .. math::

            \hat{d} = \frac{(s_u, s_v, 1)}{\sqrt{1 + s_u^2 + s_v^2}},

        flipped when the global depth of the intercept and the global depth
        component of :math:`\hat d` have opposite signs.
        """
        geo = ctx.geometry
        proto = ctx.proto
        self.search.update_parameters(ctx)

        dz = 1.0 / np.sqrt(1.0 + proto.slope_u ** 2 + proto.slope_v ** 2)
        local_dir = np.array([proto.slope_u * dz, proto.slope_v * dz, dz], dtype=np.float64)
        intercept = np.array([proto.u0, proto.v0, 0.0], dtype=np.float64)

        z_pos = float(geo.to_global(intercept)[2])
        z_dir = float(geo.to_global_vector(local_dir)[2])
        if z_pos * z_dir < 0.0:
            local_dir = -local_dir
        proto.direction = local_dir

        errors = calculate_error(proto.hits, geo)
        return Segment(tuple(proto.hits), intercept, local_dir, errors, proto.chi2)
