from typing import Optional, Sequence

import numpy as np
import matplotlib.pyplot as plt

from segment_reco.builder import Segment
from segment_reco.geometry import ChamberGeometry
from segment_reco.hits import Hit, chamber_points


def _show_and_close(fig, *, do_show: bool = True) -> None:
    r"""
    Show a Matplotlib figure (optionally) and always close it.

    Safe in headless mode, where ``plt.show()`` is patched to a no-op by the
    CLI plotting guard.
    """
    fig.tight_layout()
    if do_show:
        plt.show()
    plt.close(fig)


def plot_chamber_segments(hits: Sequence[Hit],
                          segments: Sequence[Segment],
                          geometry: ChamberGeometry,
                          title: Optional[str] = None,
                          show: bool = True,
                          save_path: Optional[str] = None) -> None:
    r"""
    Draw a chamber's hits and segments in the :math:`(z, u)` and :math:`(z, v)`
    chamber-frame projections.

    Hits are shown with :math:`1\sigma` error bars from their diagonal
    covariance; hits used by a segment share the segment's colour, unused hits
    are grey. Each segment line spans the depth range of the layers.

    Parameters
    ----------
    hits : sequence of Hit
        All hits of the chamber.
    segments : sequence of Segment
        Output of :meth:`SegmentBuilder.run` for those hits.
    geometry : ChamberGeometry
        Chamber used to place hits in the chamber frame.
    title : str, optional
        Figure title.
    show : bool, optional
        Call ``plt.show()`` before closing.
    save_path : str, optional
        If given, save the figure there.
    """
    if not hits:
        return

    pts = chamber_points(hits, geometry)
    sig = np.sqrt(np.abs(np.array([[h.local_covariance[0], h.local_covariance[2]] for h in hits])))
    z_lo = float(geometry.hit_to_chamber(1, (0.0, 0.0))[2])
    z_hi = float(geometry.hit_to_chamber(geometry.layer_count, (0.0, 0.0))[2])
    z_line = np.linspace(min(z_lo, z_hi), max(z_lo, z_hi), 2)

    owner = {}
    for k, seg in enumerate(segments):
        for h in seg.hits:
            owner[id(h)] = k
    colors = plt.cm.tab10(np.arange(max(len(segments), 1)) % 10)

    fig, axes = plt.subplots(1, 2, figsize=(12, 5), sharex=True)
    for axis, (ax, label) in enumerate(zip(axes, ("u", "v"))):
        for k, h in enumerate(hits):
            seg_idx = owner.get(id(h))
            color = "0.6" if seg_idx is None else colors[seg_idx]
            ax.errorbar(pts[k, 2], pts[k, axis], yerr=sig[k, axis], fmt="o", ms=4, color=color)
        for s_idx, seg in enumerate(segments):
            d = seg.direction
            slope = d[axis] / d[2] if d[2] != 0 else 0.0
            ax.plot(z_line, seg.intercept[axis] + slope * z_line, "-", color=colors[s_idx],
                    label=f"segment {s_idx} (χ²={seg.chi2:.2f}, n={seg.n_hits})")
        ax.set_xlabel("z (chamber frame)")
        ax.set_ylabel(f"{label} (chamber frame)")
        ax.grid(True, alpha=0.3)
    if segments:
        axes[0].legend(fontsize=8)
    if title:
        fig.suptitle(title)
    if save_path:
        fig.savefig(save_path, dpi=120)
    _show_and_close(fig, do_show=show)
