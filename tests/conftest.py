"""Shared fixtures for the KALIGN test suite."""

import dataclasses
import os
import sys

import numpy as np
import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from kalign.kalign_config import HitCollectionConfig, TrackingSetupConfig, build_tracking_setup
from kalign.kalign_geometry import build_telescope
from kalign.kalign_simulation import TrackSimulator, misaligned_copy


@pytest.fixture
def make_setup():
    """Factory for tracking setups built through the configuration layer."""
    def _make(name, region_ids=(1,), min_hits=3, external_region_ids=None,
              updator=None, **plugins):
        external = (HitCollectionConfig(list(external_region_ids), min_hits=2)
                    if external_region_ids else None)
        cfg = TrackingSetupConfig(name=name,
                                  tracking=HitCollectionConfig(list(region_ids), min_hits),
                                  external=external, **plugins)
        setup = build_tracking_setup(cfg)
        if updator is not None:
            setup = dataclasses.replace(setup, alignment_updator=updator)
        return setup
    return _make


@pytest.fixture
def telescope_pair():
    """(truth, reconstruction) telescopes; reconstruction Plane2 shifted +0.01 in u."""
    truth = build_telescope(n_planes=6)
    reco = misaligned_copy(truth, {"Telescope/Plane2": [0.01, 0, 0, 0, 0, 0]})
    return truth, reco


@pytest.fixture
def simulator(telescope_pair):
    truth, _ = telescope_pair
    return TrackSimulator([truth], seed=7)


@pytest.fixture
def straight_hits():
    """Noise-free hits of the line (x0, y0, tx, ty) = (1, -1, 0.02, 0.01) on 6 planes."""
    from kalign.kalign_tracks import Hit
    telescope = build_telescope(n_planes=6)
    q = np.array([1.0, -1.0, 0.02, 0.01])
    hits = []
    for leaf in telescope.components:
        z = leaf.surface.position[2]
        x, y = q[0] + q[2] * z, q[1] + q[3] * z
        hits.append(Hit(det_id=leaf.det_id, region_id=leaf.region_id,
                        measurement=np.array([x, y]),
                        global_position=np.array([x, y, z])))
    return telescope, q, hits
