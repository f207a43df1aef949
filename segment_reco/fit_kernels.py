from __future__ import annotations

import numpy as np
from numba import njit


__all__ = [
    "invert_cov2_batch",
    "accumulate_normal_equations",
    "weighted_chi2",
    "design_matrix",
    "block_weight_matrix",
    "similarity_t",
    "reorder_slopes_first",
]


@njit(cache=True)
def invert_cov2_batch(cov: np.ndarray):
    r"""
    Invert a batch of symmetric 2x2 covariances stored as ``(xx, xy, yy)``.

    For each row the inverse is

    .. math::

        \begin{pmatrix} xx & xy \\ xy & yy \end{pmatrix}^{-1}
        \;=\; \frac{1}{\det}\begin{pmatrix} yy & -xy \\ -xy & xx \end{pmatrix},
        \qquad \det = xx\,yy - xy^2 .

    Parameters
    ----------
    cov : ndarray, shape (n, 3)
        Contiguous ``float64`` covariances.

    Returns
    -------
    w : ndarray, shape (n, 3)
        Inverse entries ``(w_uu, w_uv, w_vv)``.
    ok : ndarray of bool, shape (n,)
        ``False`` where the determinant vanished.

    Notes
    -----
    A singular row is **left as given** in ``w`` and flagged in ``ok``; the
    caller decides what to report. The fit keeps using that row as a weight.
    """
    n = cov.shape[0]
    w = np.empty((n, 3), dtype=np.float64)
    ok = np.ones(n, dtype=np.bool_)
    for i in range(n):
        xx = cov[i, 0]
        xy = cov[i, 1]
        yy = cov[i, 2]
        det = xx * yy - xy * xy
        if det == 0.0:
            w[i, 0] = xx
            w[i, 1] = xy
            w[i, 2] = yy
            ok[i] = False
        else:
            w[i, 0] = yy / det
            w[i, 1] = -xy / det
            w[i, 2] = xx / det
    return w, ok


@njit(cache=True)
def accumulate_normal_equations(u: np.ndarray, v: np.ndarray, z: np.ndarray, w: np.ndarray):
    r"""
    Weighted normal equations :math:`M\,p = B` for the straight-line model.

    The model predicts :math:`u(z) = u_0 + s_u z`, :math:`v(z) = v_0 + s_v z`
    with parameters :math:`p=(u_0, v_0, s_u, s_v)`. Per hit, with inverse
    covariance entries :math:`(w_{uu}, w_{uv}, w_{vv})`, rows 1–2 collect the
    intercept equations and rows 3–4 are the same rows scaled by :math:`z`.

    Parameters
    ----------
    u, v, z : ndarray, shape (n,)
        Chamber-frame hit coordinates.
    w : ndarray, shape (n, 3)
        Inverse covariances from :func:`invert_cov2_batch`.

    Returns
    -------
    M : ndarray, shape (4, 4)
    B : ndarray, shape (4,)
    """
    M = np.zeros((4, 4), dtype=np.float64)
    B = np.zeros(4, dtype=np.float64)
    for i in range(u.shape[0]):
        wuu = w[i, 0]
        wuv = w[i, 1]
        wvv = w[i, 2]
        zi = z[i]
        bu = u[i] * wuu + v[i] * wuv
        bv = u[i] * wuv + v[i] * wvv

        M[0, 0] += wuu
        M[0, 1] += wuv
        M[0, 2] += wuu * zi
        M[0, 3] += wuv * zi
        B[0] += bu

        M[1, 0] += wuv
        M[1, 1] += wvv
        M[1, 2] += wuv * zi
        M[1, 3] += wvv * zi
        B[1] += bv

        M[2, 0] += wuu * zi
        M[2, 1] += wuv * zi
        M[2, 2] += wuu * zi * zi
        M[2, 3] += wuv * zi * zi
        B[2] += bu * zi

        M[3, 0] += wuv * zi
        M[3, 1] += wvv * zi
        M[3, 2] += wuv * zi * zi
        M[3, 3] += wvv * zi * zi
        B[3] += bv * zi
    return M, B


@njit(cache=True)
def weighted_chi2(du: np.ndarray, dv: np.ndarray, w: np.ndarray) -> float:
    r"""
    :math:`\chi^2 = \sum_i du_i^2 w_{uu} + 2\,du_i\,dv_i\,w_{uv} + dv_i^2 w_{vv}`.
    """
    chsq = 0.0
    for i in range(du.shape[0]):
        chsq += du[i] * du[i] * w[i, 0] + 2.0 * du[i] * dv[i] * w[i, 1] + dv[i] * dv[i] * w[i, 2]
    return chsq


def design_matrix(z: np.ndarray) -> np.ndarray:
    r"""
    Design matrix :math:`A\in\mathbb{R}^{2n\times 4}` of the line model.

    Hit :math:`i` contributes the rows ``[1, 0, z_i, 0]`` (u measurement) and
    ``[0, 1, 0, z_i]`` (v measurement).
    """
    z = np.asarray(z, dtype=np.float64).reshape(-1)
    n = z.size
    A = np.zeros((2 * n, 4), dtype=np.float64)
    A[0::2, 0] = 1.0
    A[0::2, 2] = z
    A[1::2, 1] = 1.0
    A[1::2, 3] = z
    return A


def block_weight_matrix(cov: np.ndarray) -> np.ndarray:
    r"""
    Block-diagonal :math:`2n\times 2n` matrix of the raw hit covariances.
    """
    cov = np.asarray(cov, dtype=np.float64).reshape(-1, 3)
    n = cov.shape[0]
    W = np.zeros((2 * n, 2 * n), dtype=np.float64)
    idx = np.arange(n) * 2
    W[idx, idx] = cov[:, 0]
    W[idx, idx + 1] = cov[:, 1]
    W[idx + 1, idx] = cov[:, 1]
    W[idx + 1, idx + 1] = cov[:, 2]
    return W


def similarity_t(W: np.ndarray, A: np.ndarray) -> np.ndarray:
    r"""
    :math:`A^\top W A`, symmetrized to remove round-off asymmetry.
    """
    S = A.T @ W @ A
    return 0.5 * (S + S.T)


def reorder_slopes_first(E: np.ndarray) -> np.ndarray:
    r"""
    Swap the diagonal 2x2 blocks of a 4x4 parameter covariance.

    The fit orders parameters as ``(u0, v0, s_u, s_v)``; segment consumers want
    slopes first. The slope block moves to the upper left, the position block
    to the lower right, and the off-diagonal cross terms stay where they are.
    Applying the function twice returns the input layout.
    """
    E = np.asarray(E, dtype=np.float64)
    if E.shape != (4, 4):
        raise ValueError(f"expected a 4x4 matrix, got {E.shape}")
    out = E.copy()
    out[:2, :2] = E[2:, 2:]
    out[2:, 2:] = E[:2, :2]
    return out
