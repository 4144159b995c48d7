#!/usr/bin/env python3
"""
KALIGN — propagation, track refit and reference trajectory tests.

Run with: pytest tests/test_fitting.py -v
"""

import os
import sys

import numpy as np
import pytest
from numpy.testing import assert_allclose

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from kalign.kalign_errors import TrajectoryFitError
from kalign.kalign_fitting import (
    ReferenceTrajectoryFactory, StraightLineFitter, StraightLinePropagator,
    hit_local_variance, rigid_body_derivatives,
)
from kalign.kalign_geometry import (
    Alignable, AlignableNavigator, AlignableSurface, AlignmentPositionError,
    euler_angles_to_matrix,
)
from kalign.kalign_tracks import Hit, Track, TrackState


class TestDerivatives:

    def test_rigid_body_derivatives(self):
        expected = np.array([
            [-1.0, 0.0, 0.1, 0.2, -0.1, 2.0],
            [0.0, -1.0, 0.2, 0.4, -0.2, -1.0],
        ])
        assert_allclose(rigid_body_derivatives(1.0, 2.0, 0.1, 0.2), expected)

    def test_position_error_inflates_variance(self):
        ali = Alignable("M", 1, det_id=5)
        ali.set_alignment_position_error(AlignmentPositionError(0.01, 0.0, 0.0))
        hit = Hit(det_id=5, region_id=1, measurement=np.zeros(2))
        assert_allclose(hit_local_variance(hit, ali), [1e-6 + 1e-4, 1e-6])
        assert_allclose(hit_local_variance(hit, None), [1e-6, 1e-6])


class TestPropagator:

    def test_crossing_of_plane(self):
        surface = AlignableSurface(position=[0, 0, 10.0])
        state = StraightLinePropagator().propagate(np.array([1.0, 2.0, 0.1, 0.2]), surface)
        assert_allclose(state, [2.0, 4.0, 0.1, 0.2], atol=1e-12)

    def test_parallel_track_returns_none(self):
        # Plane normal along x, track runs in the y-z plane
        surface = AlignableSurface(rotation=euler_angles_to_matrix([0, np.pi / 2, 0]).T)
        assert StraightLinePropagator().propagate(np.array([0, 0, 0, 0.0]), surface) is None


class TestStraightLineFitter:

    def test_recovers_exact_line(self, straight_hits):
        telescope, q, hits = straight_hits
        nav = AlignableNavigator([telescope])
        fitted = StraightLineFitter().fit(hits, StraightLinePropagator(), nav, track_id=3)
        assert_allclose(fitted.state.parameters, q, atol=1e-8)
        assert fitted.chi2 < 1e-6
        assert fitted.ndof == 8
        assert fitted.track_id == 3
        assert fitted.state.covariance.shape == (4, 4)

    def test_too_few_hits(self, straight_hits):
        telescope, _, hits = straight_hits
        with pytest.raises(TrajectoryFitError):
            StraightLineFitter().fit(hits[:1], StraightLinePropagator(),
                                     AlignableNavigator([telescope]))

    def test_unknown_detector(self, straight_hits):
        telescope, _, hits = straight_hits
        bad = hits[:2] + [Hit(det_id=424242, region_id=1, measurement=np.zeros(2))]
        with pytest.raises(TrajectoryFitError):
            StraightLineFitter().fit(bad, StraightLinePropagator(),
                                     AlignableNavigator([telescope]))


class TestReferenceTrajectoryFactory:

    def _fit(self, telescope, hits):
        nav = AlignableNavigator([telescope])
        fitted = StraightLineFitter().fit(hits, StraightLinePropagator(), nav)
        return nav, fitted

    def test_builds_linearized_model(self, straight_hits):
        telescope, q, hits = straight_hits
        nav, fitted = self._fit(telescope, hits)
        refs = ReferenceTrajectoryFactory().trajectories(
            nav, [(fitted, Track(hits))], [None])
        assert len(refs) == 1
        ref = refs[0]
        assert ref.n_measurements == 12
        assert ref.is_valid
        assert not ref.has_external_prediction
        assert_allclose(ref.residuals(), np.zeros(12), atol=1e-8)
        assert [hd.row for hd in ref.hit_derivatives] == [0, 2, 4, 6, 8, 10]
        assert ref.dets() == telescope.components
        # u at plane i depends on x0 with unit derivative and on tx with z
        assert_allclose(ref.track_derivatives[0::2, 0], np.ones(6), atol=1e-6)
        assert_allclose(ref.track_derivatives[0::2, 2], 10.0 * np.arange(6), atol=1e-5)

    def test_external_prediction_appended(self, straight_hits):
        telescope, q, hits = straight_hits
        nav, fitted = self._fit(telescope, hits)
        external = TrackState(q + 1e-3, np.eye(4) * 1e-4)
        ref = ReferenceTrajectoryFactory().trajectories(
            nav, [(fitted, Track(hits))], [external])[0]
        assert ref.has_external_prediction
        assert ref.n_measurements == 16
        assert ref.covariance.shape == (16, 16)
        assert_allclose(ref.track_derivatives[12:], np.eye(4))
        assert_allclose(ref.residuals()[12:], np.full(4, 1e-3), atol=1e-7)

    def test_external_prediction_can_be_ignored(self, straight_hits):
        telescope, q, hits = straight_hits
        nav, fitted = self._fit(telescope, hits)
        factory = ReferenceTrajectoryFactory(use_external_prediction=False)
        ref = factory.trajectories(nav, [(fitted, Track(hits))],
                                   [TrackState(q, np.eye(4))])[0]
        assert ref.n_measurements == 12

    def test_short_trajectories_dropped(self, straight_hits):
        telescope, _, hits = straight_hits
        nav, fitted = self._fit(telescope, hits)
        factory = ReferenceTrajectoryFactory(min_measurements=14)
        assert factory.trajectories(nav, [(fitted, Track(hits))], [None]) == []

    def test_length_mismatch(self, straight_hits):
        telescope, _, hits = straight_hits
        nav, fitted = self._fit(telescope, hits)
        with pytest.raises(ValueError):
            ReferenceTrajectoryFactory().trajectories(nav, [(fitted, Track(hits))], [])
