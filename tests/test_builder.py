import numpy as np
import pytest

from segment_reco.builder import Segment, SegmentBuilder, min_hits_required
from segment_reco.config import SegmentConfig
from segment_reco.hits import Hit

from conftest import SIGMA2, line_hits


def _noise(n, layers=(1, 2, 3, 4, 5, 6), start=100.0, step=30.0):
    # widely spaced in u: no pair passes the seed slope cut
    return [Hit(layers[k % len(layers)], (start + step * k, 0.0), (SIGMA2, 0.0, SIGMA2), hit_id=1000 + k)
            for k in range(n)]


def test_fewer_than_three_hits(chamber):
    builder = SegmentBuilder()
    assert builder.run(chamber, []) == []
    assert builder.run(chamber, line_hits(0.0, 0.1, layers=(1, 6))) == []


def test_three_hit_scenario(chamber):
    hits = [
        Hit(1, (0.0, 0.0), (SIGMA2, 0.0, SIGMA2)),
        Hit(3, (0.4, 0.4), (SIGMA2, 0.0, SIGMA2)),
        Hit(5, (0.8, 0.8), (SIGMA2, 0.0, SIGMA2)),
    ]
    segs = SegmentBuilder().run(chamber, hits)
    assert len(segs) == 1
    seg = segs[0]
    assert isinstance(seg, Segment)
    assert seg.n_hits == 3
    assert np.allclose(seg.intercept, [0.0, 0.0, 0.0], atol=1e-9)
    norm = np.sqrt(1.0 + 2 * 0.2 ** 2)
    assert np.allclose(seg.direction, [0.2 / norm, 0.2 / norm, 1.0 / norm])
    assert seg.chi2 < 1e-9
    assert seg.degrees_of_freedom == 2


def test_single_track(chamber):
    hits = line_hits(-1.0, 0.2, 0.5, -0.3)
    segs = SegmentBuilder().run(chamber, hits)
    assert len(segs) == 1
    seg = segs[0]
    assert sorted(seg.layers) == [1, 2, 3, 4, 5, 6]
    assert np.isclose(np.linalg.norm(seg.direction), 1.0)
    assert np.isclose(seg.direction[0] / seg.direction[2], 0.2)
    assert np.isclose(seg.direction[1] / seg.direction[2], -0.3)
    assert np.allclose(seg.error_matrix, seg.error_matrix.T)
    assert seg.chi2_probability > 0.99


def test_segment_is_read_only(chamber):
    seg = SegmentBuilder().run(chamber, line_hits(0.0, 0.1))[0]
    with pytest.raises(ValueError):
        seg.direction[0] = 1.0
    with pytest.raises(AttributeError):
        seg.chi2 = 0.0


def test_direction_points_away_from_origin(backward_chamber):
    segs = SegmentBuilder().run(backward_chamber, line_hits(0.0, 0.1))
    assert len(segs) == 1
    d = segs[0].direction
    assert d[2] < 0.0
    assert np.isclose(d[0] / d[2], 0.1)


def test_two_tracks(chamber):
    a = line_hits(-20.0, 0.1, first_id=0)
    b = line_hits(20.0, -0.1, 10.0, 0.0, first_id=10)
    hits = [h for pair in zip(a, b) for h in pair]
    segs = SegmentBuilder().run(chamber, hits)
    assert len(segs) == 2
    ids = [{h.hit_id for h in s.hits} for s in segs]
    assert ids[0] == {h.hit_id for h in a}
    assert ids[1] == {h.hit_id for h in b}
    for s in segs:
        assert len(set(s.layers)) == s.n_hits


def test_close_hit_replaced_by_better_one(chamber):
    track = line_hits(0.0, 0.1)
    decoy = Hit(3, (1.2, 0.0), (SIGMA2, 0.0, SIGMA2), hit_id=99)
    segs, ctx = SegmentBuilder().run_with_context(chamber, track + [decoy])
    assert len(segs) == 1
    assert any(h is track[2] for h in segs[0].hits)
    assert not any(h is decoy for h in segs[0].hits)
    # deferred close hit is consumed too
    assert ctx.used.all()
    assert ctx.duplicate_add_attempts == 0


def test_at_most_max_segments(chamber):
    tracks = [line_hits(u0, 0.0, first_id=10 * k) for k, u0 in enumerate((-60, -40, -20, 0, 20, 40))]
    hits = [h for t in tracks for h in t]
    segs = SegmentBuilder().run(chamber, hits)
    assert len(segs) == 4
    assert all(s.n_hits >= min_hits_required(3, len(hits)) for s in segs)


def test_stops_when_few_unused_hits(chamber):
    a = line_hits(-20.0, 0.1, first_id=0)
    b = line_hits(20.0, -0.1, first_id=10)
    hits = a + b
    assert len(SegmentBuilder().run(chamber, hits)) == 2

    # six hits of track b remain after the first segment, below the threshold
    segs, ctx = SegmentBuilder(SegmentConfig(min_remaining_hits=7)).run_with_context(chamber, hits)
    assert len(segs) == 1
    assert {h.hit_id for h in segs[0].hits} == {h.hit_id for h in a}
    assert ctx.n_unused == 6


def test_adaptive_minimum_hits():
    assert min_hits_required(3, 20) == 3
    assert min_hits_required(3, 21) == 4
    assert min_hits_required(3, 30) == 4
    assert min_hits_required(3, 31) == 5


def test_short_segment_rejected_in_busy_chamber(chamber):
    track = line_hits(0.0, 0.1, layers=(1, 3, 5))
    quiet = SegmentBuilder().run(chamber, track + _noise(17))
    busy = SegmentBuilder().run(chamber, track + _noise(18))
    assert len(quiet) == 1 and quiet[0].n_hits == 3
    assert busy == []


def test_builder_is_stateless(chamber):
    builder = SegmentBuilder(SegmentConfig())
    hits = line_hits(0.0, 0.1)
    first = builder.run(chamber, hits)
    second = builder.run(chamber, hits)
    assert len(first) == len(second) == 1
    assert np.array_equal(first[0].error_matrix, second[0].error_matrix)
    assert first[0].chi2 == second[0].chi2
