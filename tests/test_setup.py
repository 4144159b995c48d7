#!/usr/bin/env python3
"""
KALIGN — tracking setup, hit collection and track refitter tests.

Run with: pytest tests/test_setup.py -v
"""

import os
import sys

import numpy as np
import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from kalign.kalign_errors import TrajectoryFitError
from kalign.kalign_geometry import AlignableNavigator, build_telescope
from kalign.kalign_setup import HitCollectionPolicy, TrackRefitter, hit_radius
from kalign.kalign_simulation import TrackSimulator
from kalign.kalign_tracks import Hit, Track


@pytest.fixture
def mixed_regions():
    """Four planes with region ids 1, 1, 2, 3 and a simulator over them."""
    tel = build_telescope(n_planes=4, region_ids=[1, 1, 2, 3])
    return tel, TrackSimulator([tel], seed=11)


class TestHitCollectionPolicy:

    def test_accepts_by_region(self):
        policy = HitCollectionPolicy(frozenset({1, 2}))
        assert policy.accepts(Hit(1, 1, np.zeros(2)))
        assert not policy.accepts(Hit(1, 3, np.zeros(2)))

    def test_inside_out_ordering(self):
        far = Hit(2, 1, np.zeros(2), global_position=np.array([0, 0, 30.0]))
        near = Hit(1, 1, np.zeros(2), global_position=np.array([0, 0, 5.0]))
        assert HitCollectionPolicy(frozenset({1})).select([far, near]) == [near, far]
        keep = HitCollectionPolicy(frozenset({1}), sort_inside_out=False)
        assert keep.select([far, near]) == [far, near]

    def test_inside_out_ordering_from_module_surface(self):
        tel = build_telescope(n_planes=4)
        nav = AlignableNavigator([tel])
        hits = [Hit(leaf.det_id, 1, np.array([0.1, -0.2]))
                for leaf in reversed(tel.components)]
        assert all(h.radius is None for h in hits)
        ordered = HitCollectionPolicy(frozenset({1})).select(hits, nav)
        assert [h.det_id for h in ordered] == [leaf.det_id for leaf in tel.components]
        assert hit_radius(ordered[1], nav) == pytest.approx(np.sqrt(0.05 + 100.0))

    def test_unplaceable_hit_rejected(self):
        hit = Hit(1, 1, np.zeros(2))
        with pytest.raises(TrajectoryFitError):
            HitCollectionPolicy(frozenset({1})).select([hit, hit])
        keep = HitCollectionPolicy(frozenset({1}), sort_inside_out=False)
        assert keep.select([hit]) == [hit]

    def test_negative_min_hits_rejected(self):
        with pytest.raises(ValueError):
            HitCollectionPolicy(frozenset({1}), min_hits=-1)


class TestTrackingSetup:

    def test_predicates(self, make_setup):
        setup = make_setup("S", region_ids=(1,), min_hits=3, external_region_ids=(2,))
        assert setup.use_for_tracking(Hit(0, 1, np.zeros(2)))
        assert not setup.use_for_tracking(Hit(0, 2, np.zeros(2)))
        assert setup.use_for_external_tracking(Hit(0, 2, np.zeros(2)))
        assert setup.has_external_tracking
        assert setup.min_tracking_hits == 3
        assert setup.min_external_hits == 2

    def test_no_external_tracking(self, make_setup):
        setup = make_setup("S")
        assert not setup.has_external_tracking
        assert not setup.use_for_external_tracking(Hit(0, 1, np.zeros(2)))
        assert setup.min_external_hits == 0


class TestTrackRefitter:

    def test_too_few_qualifying_hits(self, make_setup, mixed_regions):
        tel, sim = mixed_regions
        track = sim.generate_track()
        assert sorted(h.region_id for h in track.hits) == [1, 1, 2, 3]

        strict = make_setup("S", region_ids=(1,), min_hits=3)
        loose = make_setup("T", region_ids=(1, 2), min_hits=3)
        refitter = TrackRefitter([strict, loose])
        tracklets = refitter.refit_tracks([track], AlignableNavigator([tel]))

        assert [t.tracking_setup.name for t in tracklets] == ["T"]
        assert len(tracklets[0].trajectory.hits) == 3
        assert refitter.statistics["S"].n_too_few_hits == 1
        assert refitter.statistics["T"].n_tracklets == 1

    def test_deterministic_setup_major_order(self, make_setup, mixed_regions):
        tel, sim = mixed_regions
        tracks = sim.generate_event(3)
        nav = AlignableNavigator([tel])
        a = make_setup("A", region_ids=(1, 2, 3))
        b = make_setup("B", region_ids=(1, 2))

        first = TrackRefitter([a, b]).refit_tracks(tracks, nav)
        second = TrackRefitter([a, b]).refit_tracks(tracks, nav)
        key = [(t.tracking_setup.name, t.track.track_id) for t in first]
        assert key == [("A", 0), ("A", 1), ("A", 2), ("B", 0), ("B", 1), ("B", 2)]
        assert key == [(t.tracking_setup.name, t.track.track_id) for t in second]

        groups = TrackRefitter.group_by_setup(first)
        assert list(groups) == [a, b]
        assert [t.track.track_id for t in groups[b]] == [0, 1, 2]

    def test_external_prediction(self, make_setup, mixed_regions):
        tel, sim = mixed_regions
        setup = make_setup("S", region_ids=(1, 2), min_hits=3, external_region_ids=(1, 3))
        tracklets = TrackRefitter([setup]).refit_tracks([sim.generate_track()],
                                                       AlignableNavigator([tel]))
        assert tracklets[0].external_prediction is not None
        assert tracklets[0].external_prediction.parameters.shape == (4,)

    def test_fit_failure_is_dropped(self, make_setup, mixed_regions):
        tel, sim = mixed_regions
        good = sim.generate_track()
        bad = Track([Hit(999, 1, np.zeros(2)), Hit(998, 1, np.zeros(2)),
                     Hit(997, 1, np.zeros(2))], track_id=99)
        setup = make_setup("S", region_ids=(1, 2, 3))
        refitter = TrackRefitter([setup])
        tracklets = refitter.refit_tracks([bad, good], AlignableNavigator([tel]))
        assert [t.track.track_id for t in tracklets] == [good.track_id]
        assert refitter.statistics["S"].n_fit_failures == 1

    def test_duplicate_names_rejected(self, make_setup):
        with pytest.raises(ValueError):
            TrackRefitter([make_setup("S"), make_setup("S")])
