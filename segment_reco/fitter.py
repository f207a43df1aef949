from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Sequence

import numpy as np
from scipy import linalg as sla

from segment_reco.fit_kernels import (
    accumulate_normal_equations,
    block_weight_matrix,
    design_matrix,
    invert_cov2_batch,
    reorder_slopes_first,
    similarity_t,
    weighted_chi2,
)
from segment_reco.geometry import ChamberGeometry
from segment_reco.hits import Hit, chamber_points, covariance_array

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class LineFit:
    r"""
    Result of a covariance-weighted straight-line fit in the chamber frame.

    The line is :math:`u(z) = u_0 + s_u z`, :math:`v(z) = v_0 + s_v z`.

    Attributes
    ----------
    u0, v0 : float
        Intercept at chamber :math:`z = 0`.
    slope_u, slope_v : float
        :math:`du/dz` and :math:`dv/dz`.
    chi2 : float
        Weighted sum of squared residuals.
    """
    u0: float
    v0: float
    slope_u: float
    slope_v: float
    chi2: float


def _hit_weights(hits: Sequence[Hit]) -> np.ndarray:
    w, ok = invert_cov2_batch(covariance_array(hits))
    if not ok.all():
        for k in np.flatnonzero(~ok):
            # degenerate weight is kept on purpose; the hit still contributes
            logger.debug("failed to invert covariance matrix %s of hit on layer %d",
                         hits[k].local_covariance, hits[k].layer)
    return w


def _solve_normal_equations(M: np.ndarray, B: np.ndarray) -> np.ndarray:
    try:
        return sla.solve(M, B, assume_a="sym")
    except np.linalg.LinAlgError:
        logger.debug("singular normal equations; using least-squares solution")
        return np.linalg.lstsq(M, B, rcond=None)[0]


def fit_line(hits: Sequence[Hit], geometry: ChamberGeometry) -> LineFit:
    r"""
    Covariance-weighted least-squares line through ``hits``.

    Each hit is projected into the chamber frame, its 2x2 covariance inverted
    (:func:`~segment_reco.fit_kernels.invert_cov2_batch`) and the 4x4 normal
    equations accumulated
    (:func:`~segment_reco.fit_kernels.accumulate_normal_equations`). Solving
    :math:`M p = B` gives :math:`p = (u_0, v_0, s_u, s_v)`; the chi-square is

    .. math::

        \chi^2 = \sum_i \begin{pmatrix} du_i & dv_i \end{pmatrix}
                 C_i^{-1} \begin{pmatrix} du_i \\ dv_i \end{pmatrix},
        \qquad du_i = u_0 + s_u z_i - u_i,\; dv_i = v_0 + s_v z_i - v_i.

    Parameters
    ----------
    hits : sequence of Hit
        At least two hits on distinct depths for a well-posed fit.
    geometry : ChamberGeometry
        Chamber providing the layer → chamber transform.

    Returns
    -------
    LineFit

    Notes
    -----
    Nothing is raised for degenerate input: singular hit covariances are
    used as-is and a singular system falls back to
    :func:`numpy.linalg.lstsq`, both with a DEBUG log record.
    """
    pts = chamber_points(hits, geometry)
    u = np.ascontiguousarray(pts[:, 0])
    v = np.ascontiguousarray(pts[:, 1])
    z = np.ascontiguousarray(pts[:, 2])
    w = _hit_weights(hits)

    M, B = accumulate_normal_equations(u, v, z, w)
    p = _solve_normal_equations(M, B)

    du = p[0] + p[2] * z - u
    dv = p[1] + p[3] * z - v
    chi2 = weighted_chi2(du, dv, w)
    return LineFit(float(p[0]), float(p[1]), float(p[2]), float(p[3]), float(chi2))


def _invert_or_pinv(a: np.ndarray, what: str) -> np.ndarray:
    try:
        return np.linalg.inv(a)
    except np.linalg.LinAlgError:
        logger.debug("failed to invert %s; using pseudo-inverse", what)
        return np.linalg.pinv(a)


def calculate_error(hits: Sequence[Hit], geometry: ChamberGeometry) -> np.ndarray:
    r"""
    4x4 covariance of the fitted line parameters, slopes first.

    With design matrix :math:`A` (:func:`~segment_reco.fit_kernels.design_matrix`)
    and block-diagonal hit covariance :math:`W`
    (:func:`~segment_reco.fit_kernels.block_weight_matrix`):

    .. math::

        E \;=\; \left(A^\top W^{-1} A\right)^{-1}

    in the fit order :math:`(u_0, v_0, s_u, s_v)`, then reordered with
    :func:`~segment_reco.fit_kernels.reorder_slopes_first` to
    :math:`(s_u, s_v \mid u_0, v_0)` on the diagonal blocks.

    Returns
    -------
    ndarray, shape (4, 4)
        Symmetric parameter covariance.
    """
    z = chamber_points(hits, geometry)[:, 2]
    A = design_matrix(z)
    W = block_weight_matrix(covariance_array(hits))

    W_inv = _invert_or_pinv(W, "hit weight matrix")
    a = _invert_or_pinv(similarity_t(W_inv, A), "parameter information matrix")
    a = 0.5 * (a + a.T)
    return reorder_slopes_first(a)
