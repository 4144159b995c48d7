"""
KALIGN Simulation — Straight Tracks Through a Telescope
=======================================================

Hits are generated in the TRUE geometry and reconstructed with a separate,
misaligned copy of it. The alignment run sees only the reconstruction
geometry; the difference between the two is what it has to recover.

Sign convention: if the reconstruction places a module shifted by ``+s``
along local u, the estimated ``du`` converges to ``-s``.

Author: KALIGN developers
"""

from __future__ import annotations

import copy
import numpy as np
from typing import Dict, Iterator, List, Optional, Sequence

from .kalign_fitting import StraightLinePropagator
from .kalign_geometry import Alignable, euler_angles_to_matrix
from .kalign_tracks import Hit, Track


def misaligned_copy(alignable: Alignable,
                    misalignments: Dict[str, Sequence[float]]) -> Alignable:
    """Deep copy of ``alignable`` with local rigid-body offsets applied.

    Args:
        misalignments: Module name → ``(du, dv, dw, alpha, beta, gamma)``.
    """
    twin = copy.deepcopy(alignable)
    by_name = {ali.name: ali for ali in twin.walk()}
    for name, values in misalignments.items():
        ali = by_name.get(name)
        if ali is None:
            raise KeyError(f"No alignable named {name!r}")
        values = np.asarray(values, dtype=float)
        ali.move(ali.surface.to_global(values[:3]))
        if values.size > 3 and values[3:] @ values[3:] > 0:
            ali.rotate_in_local_frame(euler_angles_to_matrix(values[3:6]))
    return twin


class TrackSimulator:
    """Generate straight tracks and their measured hits.

    Args:
        alignables: TRUE geometry.
        seed: Seed of the simulator's own random stream.
        resolution: Gaussian hit resolution in u and v.
        beam_spread: Sigma of the track origin in x and y at z = 0.
        slope_spread: Sigma of the track slopes tx, ty.
    """

    def __init__(self, alignables: Sequence[Alignable], seed: int = 42,
                 resolution: float = 1e-3, beam_spread: float = 2.0,
                 slope_spread: float = 0.05):
        self.leaves = [leaf for top in alignables for leaf in top.deep_components()
                       if leaf.det_id is not None]
        self.rng = np.random.RandomState(seed)
        self.resolution = resolution
        self.beam_spread = beam_spread
        self.slope_spread = slope_spread
        self.propagator = StraightLinePropagator()
        self._next_id = 0

    def generate_track(self) -> Track:
        x0, y0 = self.rng.randn(2) * self.beam_spread
        tx, ty = self.rng.randn(2) * self.slope_spread
        params = np.array([x0, y0, tx, ty])

        hits = []
        for leaf in self.leaves:
            state = self.propagator.propagate(params, leaf.surface)
            if state is None:
                continue
            u, v = state[:2]
            measured = np.array([u, v]) + self.rng.randn(2) * self.resolution
            hits.append(Hit(
                det_id=leaf.det_id,
                region_id=leaf.region_id,
                measurement=measured,
                variance=np.full(2, self.resolution ** 2),
                global_position=leaf.surface.to_global_point(np.array([u, v, 0.0])),
            ))
        track = Track(hits=hits, track_id=self._next_id)
        self._next_id += 1
        return track

    def generate_event(self, n_tracks: int) -> List[Track]:
        return [self.generate_track() for _ in range(n_tracks)]

    def events(self, n_events: int, tracks_per_event: int) -> Iterator[List[Track]]:
        for _ in range(n_events):
            yield self.generate_event(tracks_per_event)


def estimated_offsets(alignables: Sequence[Alignable]) -> Dict[str, Optional[np.ndarray]]:
    """Current parameter vector per module name (``None`` without a slot)."""
    out = {}
    for top in alignables:
        for ali in top.walk():
            params = ali.alignment_parameters
            out[ali.name] = None if params is None else np.array(params.parameters)
    return out
