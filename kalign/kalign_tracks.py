"""KALIGN track data types: hits, input tracks, fitted track states."""

from __future__ import annotations

import numpy as np
from dataclasses import dataclass, field
from typing import List, Optional


@dataclass
class Hit:
    """A reconstructed hit on one sensitive module.

    Attributes:
        det_id: Detector id of the module that recorded the hit.
        region_id: Detector-region (sub-detector) identifier.
        measurement: Local (u, v) position on the module plane.
        variance: Local measurement variances (sigma_u^2, sigma_v^2).
        global_position: Global position, used for inside-out ordering.
            When omitted the hit is placed on its module surface.
    """
    det_id: int
    region_id: int
    measurement: np.ndarray
    variance: np.ndarray = field(default_factory=lambda: np.array([1e-6, 1e-6]))
    global_position: Optional[np.ndarray] = None

    @property
    def radius(self) -> Optional[float]:
        """Distance of the hit from the global origin, if its position is known."""
        if self.global_position is None:
            return None
        return float(np.linalg.norm(self.global_position))


@dataclass
class Track:
    """An input track: an ordered hit collection."""
    hits: List[Hit]
    track_id: int = -1

    def __len__(self) -> int:
        return len(self.hits)


@dataclass
class TrackState:
    """Straight-line track parameters and covariance.

    Parametrization ``(x0, y0, tx, ty)``: the line passes through
    ``(x0, y0, 0)`` with direction ``(tx, ty, 1)``.
    """
    parameters: np.ndarray
    covariance: np.ndarray

    N_PARAMETERS = 4

    @property
    def direction(self) -> np.ndarray:
        d = np.array([self.parameters[2], self.parameters[3], 1.0])
        return d / np.linalg.norm(d)

    def position_at_z(self, z: float) -> np.ndarray:
        x0, y0, tx, ty = self.parameters
        return np.array([x0 + tx * z, y0 + ty * z, z])


@dataclass
class FittedTrajectory:
    """Result of refitting a track's hits."""
    state: TrackState
    hits: List[Hit]
    chi2: float = 0.0
    ndof: int = 0
    track_id: int = -1

    @property
    def n_hits(self) -> int:
        return len(self.hits)

    @property
    def chi2_ndof(self) -> Optional[float]:
        return self.chi2 / self.ndof if self.ndof > 0 else None
