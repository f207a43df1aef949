import numpy as np

from segment_reco.config import SegmentConfig
from segment_reco.geometry import PlanarChamber
from segment_reco.hits import Hit
from segment_reco.search import CandidateSearch, ProtoSegment, SearchContext

from conftest import LAYER_Z, SIGMA2, line_hits


def _proto_state(proto: ProtoSegment):
    return (list(proto.hits), proto.u0, proto.v0, proto.slope_u, proto.slope_v, proto.chi2)


def test_steep_seed_pair_is_skipped(chamber):
    # |du/dz| = 5 on every pair, far above tan_phi_max
    hits = [Hit(layer, (5.0 * LAYER_Z[layer - 1], 0.0), (SIGMA2, 0.0, SIGMA2)) for layer in (1, 3, 5)]
    ctx = SearchContext.create(chamber, hits)
    search = CandidateSearch(SegmentConfig())
    assert list(search.seed_pairs(ctx)) == []
    assert ctx.proto.hits == []
    assert not ctx.used.any()


def test_seed_pairs_respect_layer_gap_and_order(chamber):
    hits = line_hits(0.0, 0.1)
    ctx = SearchContext.create(chamber, hits)
    pairs = list(CandidateSearch(SegmentConfig(min_layers_apart=2)).seed_pairs(ctx))
    first = pairs[0]
    assert (first[0], first[1]) == (0, 5)
    assert np.isclose(first[2], 0.1) and np.isclose(first[3], 0.0)
    assert all(ctx.layers[j] - ctx.layers[i] >= 2 for i, j, _, _ in pairs)


def test_seed_pairs_skip_used_hits(chamber):
    hits = line_hits(0.0, 0.1)
    ctx = SearchContext.create(chamber, hits)
    ctx.used[0] = True
    ctx.used[5] = True
    pairs = list(CandidateSearch(SegmentConfig()).seed_pairs(ctx))
    assert pairs
    assert all(i not in (0, 5) and j not in (0, 5) for i, j, _, _ in pairs)


def test_proximity_two_tier_cut(chamber):
    search = CandidateSearch(SegmentConfig())
    ctx = SearchContext.create(chamber, line_hits(0.0, 0.0))
    ctx.proto.u0, ctx.proto.v0 = 0.0, 0.0
    near = Hit(3, (1.0, 0.0), (SIGMA2, 0.0, SIGMA2))
    far = Hit(3, (10.0, 0.0), (SIGMA2, 0.0, SIGMA2))
    assert search.is_hit_near_segment(ctx, near)
    assert not search.is_hit_near_segment(ctx, far)

    # pure-angle cut alone rejects when R*dphi would pass
    tight = CandidateSearch(SegmentConfig(d_rphi_fine_max=100.0, d_phi_fine_max=0.001))
    assert not tight.is_hit_near_segment(ctx, near)


def test_proximity_keeps_single_turn_wrap():
    # chamber straddling phi = 0: local u runs along global y
    ch = PlanarChamber(LAYER_Z, origin=(200.0, 0.0, 700.0), rotation_deg=90.0)
    search = CandidateSearch(SegmentConfig())
    ctx = SearchContext.create(ch, line_hits(0.0, 0.0))

    ctx.proto.u0 = 0.75
    same_side = Hit(2, (0.25, 0.0), (SIGMA2, 0.0, SIGMA2))
    assert search.is_hit_near_segment(ctx, same_side)

    # 0.5 apart but on opposite sides of phi = 0: the raw difference is close
    # to 2*pi and only a single +-2*pi correction beyond that range is applied
    ctx.proto.u0 = 0.25
    across = Hit(2, (-0.25, 0.0), (SIGMA2, 0.0, SIGMA2))
    assert not search.is_hit_near_segment(ctx, across)


def _seeded(chamber, hits, i, j):
    search = CandidateSearch(SegmentConfig())
    ctx = SearchContext.create(chamber, hits)
    su, sv = search.seed_slopes(ctx, i, j)
    search.start_proto_segment(ctx, i, j, su, sv)
    return search, ctx


def test_start_proto_segment(chamber):
    hits = line_hits(0.5, 0.1, 0.2, 0.0)
    search, ctx = _seeded(chamber, hits, 0, 5)
    assert ctx.proto.hits == [hits[0], hits[5]]
    assert (ctx.proto.u0, ctx.proto.v0) == hits[0].local_position
    assert np.isclose(ctx.proto.slope_u, 0.1)


def test_try_adding_hits_defers_same_layer_hits(chamber):
    track = line_hits(0.0, 0.1)
    decoy = Hit(3, (0.2 + 1.0, 0.0), (SIGMA2, 0.0, SIGMA2))
    hits = track + [decoy]
    search, ctx = _seeded(chamber, hits, 0, 5)  # layer 1 and layer 6
    assert {h.layer for h in ctx.proto.hits} == {1, 6}

    search.try_adding_hits(ctx, 0, 5)
    assert len(ctx.proto.hits) == 6
    assert sorted(h.layer for h in ctx.proto.hits) == [1, 2, 3, 4, 5, 6]
    assert ctx.close_hits == [decoy]
    assert any(h is track[2] for h in ctx.proto.hits)
    assert ctx.proto.chi2 < 1e-9


def test_conflict_resolution_keeps_better_hit(chamber):
    track = line_hits(0.0, 0.1)
    decoy = Hit(3, (0.2 + 1.0, 0.0), (SIGMA2, 0.0, SIGMA2))
    search = CandidateSearch(SegmentConfig())
    ctx = SearchContext.create(chamber, track + [decoy])
    for h in (track[0], track[1], decoy, track[3], track[4], track[5]):
        ctx.proto.add_hit(h)
    search.update_parameters(ctx)
    before = ctx.proto.chi2

    search.compare_proto_segment(ctx, track[2])
    assert ctx.proto.chi2 < before
    assert any(h is track[2] for h in ctx.proto.hits)
    assert not any(h is decoy for h in ctx.proto.hits)
    assert len(ctx.proto.hits) == 6


def test_conflict_resolution_rolls_back_worse_hit(chamber):
    track = line_hits(0.0, 0.1)
    decoy = Hit(3, (0.2 + 1.0, 0.0), (SIGMA2, 0.0, SIGMA2))
    search = CandidateSearch(SegmentConfig())
    ctx = SearchContext.create(chamber, track + [decoy])
    for h in track:
        ctx.proto.add_hit(h)
    search.update_parameters(ctx)
    before = _proto_state(ctx.proto)

    search.compare_proto_segment(ctx, decoy)
    after = _proto_state(ctx.proto)
    assert after[1:] == before[1:]
    assert len(after[0]) == len(before[0])
    assert all(a is b for a, b in zip(after[0], before[0]))
    assert ctx.duplicate_add_attempts == 0


def test_conflict_resolution_never_raises_chi2(chamber):
    rng = np.random.default_rng(11)
    track = [Hit(h.layer, (h.local_position[0] + rng.normal(0, 0.1), h.local_position[1]),
                 h.local_covariance) for h in line_hits(0.0, 0.1)]
    search = CandidateSearch(SegmentConfig())
    ctx = SearchContext.create(chamber, track)
    for h in track:
        ctx.proto.add_hit(h)
    search.update_parameters(ctx)
    for k in range(6):
        candidate = Hit(track[k].layer, (track[k].local_position[0] + rng.normal(0, 0.2), 0.0),
                        (SIGMA2, 0.0, SIGMA2))
        before = ctx.proto.chi2
        search.compare_proto_segment(ctx, candidate)
        assert ctx.proto.chi2 <= before
        assert len({h.layer for h in ctx.proto.hits}) == len(ctx.proto.hits)


def test_flag_hits_as_used_marks_members_and_close_hits(chamber):
    track = line_hits(0.0, 0.1)
    decoy = Hit(3, (1.2, 0.0), (SIGMA2, 0.0, SIGMA2))
    stray = Hit(4, (50.0, 0.0), (SIGMA2, 0.0, SIGMA2))
    ctx = SearchContext.create(chamber, track + [decoy, stray])
    ctx.proto.hits = list(track)
    ctx.close_hits = [decoy]
    ctx.flag_hits_as_used()
    used = {id(h) for h, u in zip(ctx.hits, ctx.used) if u}
    assert used == {id(h) for h in track + [decoy]}
    assert ctx.n_unused == 1
