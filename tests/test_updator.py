#!/usr/bin/env python3
"""
KALIGN — sequential Kalman update and metrics bookkeeping tests.

Run with: pytest tests/test_updator.py -v
"""

import os
import sys

import numpy as np
import pytest
from numpy.testing import assert_allclose

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from kalign.kalign_errors import UpdateError
from kalign.kalign_fitting import (
    ReferenceTrajectoryFactory, StraightLineFitter, StraightLinePropagator,
)
from kalign.kalign_geometry import Alignable, AlignableNavigator
from kalign.kalign_parameters import (
    AlignmentParameters, AlignmentParameterStore, KalmanUserVariables,
)
from kalign.kalign_updator import KalmanAlignmentUpdator, SimpleMetricsUpdator

START_ERROR = np.diag([4e-4, 4e-4, 4e-4, 3e-5, 3e-5, 3e-5])


def seed_module(store, ali):
    params = ali.alignment_parameters.clone(np.zeros(6), START_ERROR,
                                            user_variables=KalmanUserVariables(ali))
    store.update_parameters(ali, params)


def trajectories(reco, tracks):
    nav = AlignableNavigator([reco])
    fitter, prop = StraightLineFitter(), StraightLinePropagator()
    pairs = [(fitter.fit(t.hits, prop, nav, t.track_id), t) for t in tracks]
    return nav, ReferenceTrajectoryFactory().trajectories(nav, pairs, [None] * len(pairs))


class TestSimpleMetricsUpdator:

    def test_touched_modules_and_distance(self):
        a, b, c, d = (Alignable(n, i) for i, n in enumerate("ABCD"))
        metrics = SimpleMetricsUpdator(max_distance=2)
        metrics.update([a, b])
        metrics.update([b, c])
        metrics.update([b, a])
        assert metrics.alignables() == [a, b, c]
        assert metrics.touched_modules() == {a, b, c}
        assert metrics.n_updates == 3
        assert metrics.distance(a, a) == 0
        assert metrics.distance(a, b) == 1
        assert metrics.distance(a, c) == 2
        assert metrics.distance(a, d) is None

    def test_distance_cut(self):
        mods = [Alignable(f"M{i}", i) for i in range(4)]
        metrics = SimpleMetricsUpdator(max_distance=1)
        for first, second in zip(mods, mods[1:]):
            metrics.update([first, second])
        assert metrics.distance(mods[0], mods[1]) == 1
        assert metrics.distance(mods[0], mods[3]) is None


class TestKalmanAlignmentUpdator:

    def test_single_update(self, telescope_pair, simulator):
        _, reco = telescope_pair
        module = reco.components[2]
        store = AlignmentParameterStore.create([reco], ["Telescope/Plane2"])
        seed_module(store, module)
        nav, refs = trajectories(reco, [simulator.generate_track()])

        before = module.alignment_parameters
        metrics = SimpleMetricsUpdator()
        updator = KalmanAlignmentUpdator()
        assert updator.process(refs[0], store, nav, metrics)

        after = module.alignment_parameters
        assert after is not before
        assert_allclose(before.parameters, np.zeros(6))
        assert np.all(np.diag(after.covariance) <= np.diag(before.covariance) + 1e-15)
        assert after.covariance[0, 0] < before.covariance[0, 0]
        assert after.kalman_user_variables().n_updates == 1
        assert before.kalman_user_variables().n_updates == 0
        assert metrics.alignables() == [module]
        assert updator.n_accepted == 1

    def test_no_parameter_slots(self, telescope_pair, simulator):
        _, reco = telescope_pair
        store = AlignmentParameterStore()
        nav, refs = trajectories(reco, [simulator.generate_track()])
        metrics = SimpleMetricsUpdator()
        assert not KalmanAlignmentUpdator().process(refs[0], store, nav, metrics)
        assert metrics.n_updates == 0

    def test_chi2_cut_rejects(self, telescope_pair, simulator):
        _, reco = telescope_pair
        module = reco.components[2]
        store = AlignmentParameterStore.create([reco], ["Telescope/Plane2"])
        seed_module(store, module)
        nav, refs = trajectories(reco, [simulator.generate_track()])
        updator = KalmanAlignmentUpdator(max_chi2_ndof=1e-12)
        assert not updator.process(refs[0], store, nav, SimpleMetricsUpdator())
        assert module.alignment_parameters.kalman_user_variables().n_updates == 0

    def test_parameter_size_mismatch(self, telescope_pair, simulator):
        _, reco = telescope_pair
        module = reco.components[2]
        store = AlignmentParameterStore([module])
        module.alignment_parameters = AlignmentParameters(module, np.zeros(3), np.eye(3))
        nav, refs = trajectories(reco, [simulator.generate_track()])
        with pytest.raises(UpdateError):
            KalmanAlignmentUpdator().process(refs[0], store, nav, SimpleMetricsUpdator())

    def test_inconsistent_dimensions(self, telescope_pair, simulator):
        _, reco = telescope_pair
        module = reco.components[2]
        store = AlignmentParameterStore.create([reco], ["Telescope/Plane2"])
        seed_module(store, module)
        nav, refs = trajectories(reco, [simulator.generate_track()])
        ref = refs[0]
        ref.covariance = ref.covariance[:-2, :-2]
        with pytest.raises(UpdateError):
            KalmanAlignmentUpdator().process(ref, store, nav, SimpleMetricsUpdator())

    def test_converges_to_reconstruction_shift(self, telescope_pair, simulator):
        """Plane2 placed +0.01 off in u: the correction converges to -0.01."""
        _, reco = telescope_pair
        module = reco.components[2]
        store = AlignmentParameterStore.create([reco], ["Telescope/Plane2"])
        seed_module(store, module)
        nav, refs = trajectories(reco, simulator.generate_event(200))
        updator, metrics = KalmanAlignmentUpdator(), SimpleMetricsUpdator()
        for ref in refs:
            updator.process(ref, store, nav, metrics)

        final = module.alignment_parameters
        assert final.parameters[0] == pytest.approx(-0.01, abs=1e-3)
        assert abs(final.parameters[1]) < 1e-3
        assert np.sqrt(final.covariance[0, 0]) < 1e-3
        assert final.kalman_user_variables().n_updates == len(refs)

    def test_composite_slot_receives_leaf_updates(self, telescope_pair, simulator):
        _, reco = telescope_pair
        store = AlignmentParameterStore.create([reco], ["Telescope"])
        seed_module(store, reco)
        nav, refs = trajectories(reco, [simulator.generate_track()])
        metrics = SimpleMetricsUpdator()
        KalmanAlignmentUpdator().process(refs[0], store, nav, metrics)
        assert metrics.alignables() == [reco]
        assert reco.alignment_parameters.kalman_user_variables().n_updates == 1

