"""
KALIGN Track Refitting & Reference Trajectories
================================================

Straight-line propagation and least-squares refitting of hits measured on
planar modules, plus the reference trajectories fed to the alignment
updator.

Measurement model of one hit (local u, v on its module):

    m = f(q) + D * dq + H * a + noise

    q : track parameters (x0, y0, tx, ty)
    D : df/dq at the reference track
    a : rigid-body alignment parameters of the module (du, dv, dw, alpha, beta, gamma)
    H : alignment derivatives at the crossing point

Alignment derivatives (local crossing point u, v and local slopes u', v'):

    du/da = [-1,  0, u', v*u', -u*u',  v]
    dv/da = [ 0, -1, v', v*v', -u*v', -u]

Author: KALIGN developers
"""

from __future__ import annotations

import logging
import numpy as np
from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple
from scipy import linalg

from .kalign_errors import TrajectoryFitError
from .kalign_geometry import Alignable, AlignableNavigator, AlignableSurface
from .kalign_tracks import FittedTrajectory, Hit, Track, TrackState

logger = logging.getLogger(__name__)

# Rows per hit: (u, v)
MEASUREMENT_DIM = 2


def rigid_body_derivatives(u: float, v: float,
                           u_slope: float, v_slope: float) -> np.ndarray:
    """2x6 derivatives of the local (u, v) measurement w.r.t. rigid-body parameters."""
    return np.array([
        [-1.0, 0.0, u_slope, v * u_slope, -u * u_slope, v],
        [0.0, -1.0, v_slope, v * v_slope, -u * v_slope, -u],
    ])


def hit_local_variance(hit: Hit, alignable: Optional[Alignable]) -> np.ndarray:
    """Hit variances with the module's positional error added in quadrature."""
    var = np.asarray(hit.variance, dtype=float).copy()
    if alignable is not None and alignable.alignment_position_error is not None:
        ape = alignable.alignment_position_error.as_vector()
        rot = alignable.surface.rotation
        local_cov = rot @ np.diag(ape ** 2) @ rot.T
        var += np.array([local_cov[0, 0], local_cov[1, 1]])
    return var


# ---------------------------------------------------------------------------
# Propagation
# ---------------------------------------------------------------------------
class StraightLinePropagator:
    """Intersect a straight track with a module plane."""

    def __init__(self, min_cos_angle: float = 1e-9):
        self.min_cos_angle = min_cos_angle

    def propagate(self, parameters: np.ndarray,
                  surface: AlignableSurface) -> Optional[np.ndarray]:
        """Local ``(u, v, u', v')`` at the plane crossing, ``None`` if parallel."""
        x0, y0, tx, ty = parameters
        origin = np.array([x0, y0, 0.0])
        direction = np.array([tx, ty, 1.0])
        normal = surface.normal
        denom = float(normal @ direction)
        if abs(denom) < self.min_cos_angle:
            return None
        s = float(normal @ (surface.position - origin)) / denom
        local = surface.to_local_point(origin + s * direction)
        local_dir = surface.to_local(direction)
        return np.array([local[0], local[1],
                         local_dir[0] / local_dir[2], local_dir[1] / local_dir[2]])


def _predict(parameters: np.ndarray, surfaces: Sequence[AlignableSurface],
             propagator: StraightLinePropagator) -> np.ndarray:
    """Stacked local predictions, one ``(u, v, u', v')`` row per surface."""
    rows = []
    for surface in surfaces:
        state = propagator.propagate(parameters, surface)
        if state is None:
            raise TrajectoryFitError("Track is parallel to a module plane")
        rows.append(state)
    return np.array(rows)


def _track_jacobian(parameters: np.ndarray, surfaces: Sequence[AlignableSurface],
                    propagator: StraightLinePropagator,
                    step: float = 1e-6) -> np.ndarray:
    """Central-difference derivatives of the stacked (u, v) w.r.t. track parameters."""
    n_par = parameters.size
    jac = np.zeros((MEASUREMENT_DIM * len(surfaces), n_par))
    for j in range(n_par):
        dq = np.zeros(n_par)
        dq[j] = step
        up = _predict(parameters + dq, surfaces, propagator)[:, :2].reshape(-1)
        dn = _predict(parameters - dq, surfaces, propagator)[:, :2].reshape(-1)
        jac[:, j] = (up - dn) / (2 * step)
    return jac


# ---------------------------------------------------------------------------
# Fitting
# ---------------------------------------------------------------------------
class StraightLineFitter:
    """Gauss-Newton least-squares refit of a straight track.

    Args:
        max_iterations: Upper bound on Gauss-Newton iterations.
        tolerance: Stop when the parameter step norm falls below this.
        min_hits: Structural minimum; fewer hits raise TrajectoryFitError.
    """

    def __init__(self, max_iterations: int = 5, tolerance: float = 1e-10,
                 min_hits: int = 2):
        self.max_iterations = max_iterations
        self.tolerance = tolerance
        self.min_hits = max(2, min_hits)

    def fit(self, hits: Sequence[Hit], propagator: StraightLinePropagator,
            navigator: AlignableNavigator, track_id: int = -1) -> FittedTrajectory:
        if len(hits) < self.min_hits:
            raise TrajectoryFitError(
                f"{len(hits)} hits, at least {self.min_hits} needed")

        alignables = []
        for hit in hits:
            ali = navigator.alignable_from_hit(hit)
            if ali is None:
                raise TrajectoryFitError(f"Unknown detector id {hit.det_id}")
            alignables.append(ali)
        surfaces = [ali.surface for ali in alignables]

        meas = np.concatenate([np.asarray(h.measurement, dtype=float)[:2] for h in hits])
        var = np.concatenate([hit_local_variance(h, a) for h, a in zip(hits, alignables)])
        weights = 1.0 / var

        q = self._initial_guess(hits, surfaces)
        for _ in range(self.max_iterations):
            pred = _predict(q, surfaces, propagator)[:, :2].reshape(-1)
            jac = _track_jacobian(q, surfaces, propagator)
            normal = jac.T @ (weights[:, None] * jac)
            rhs = jac.T @ (weights * (meas - pred))
            try:
                dq = linalg.solve(normal, rhs, assume_a='pos')
            except (linalg.LinAlgError, ValueError) as exc:
                raise TrajectoryFitError(f"Singular track fit: {exc}") from exc
            q = q + dq
            if np.linalg.norm(dq) < self.tolerance:
                break

        pred = _predict(q, surfaces, propagator)[:, :2].reshape(-1)
        jac = _track_jacobian(q, surfaces, propagator)
        normal = jac.T @ (weights[:, None] * jac)
        try:
            cov = linalg.inv(normal)
        except (linalg.LinAlgError, ValueError) as exc:
            raise TrajectoryFitError(f"Singular track covariance: {exc}") from exc
        resid = meas - pred
        chi2 = float(resid @ (weights * resid))

        return FittedTrajectory(
            state=TrackState(q, 0.5 * (cov + cov.T)),
            hits=list(hits),
            chi2=chi2,
            ndof=meas.size - q.size,
            track_id=track_id,
        )

    @staticmethod
    def _initial_guess(hits: Sequence[Hit],
                       surfaces: Sequence[AlignableSurface]) -> np.ndarray:
        """Line through the measured points, z-projection."""
        points = np.array([
            s.to_global_point(np.array([h.measurement[0], h.measurement[1], 0.0]))
            for h, s in zip(hits, surfaces)
        ])
        z = points[:, 2]
        if np.ptp(z) < 1e-12:
            return np.zeros(TrackState.N_PARAMETERS)
        design = np.column_stack([np.ones_like(z), z])
        (x0, tx), *_ = np.linalg.lstsq(design, points[:, 0], rcond=None)
        (y0, ty), *_ = np.linalg.lstsq(design, points[:, 1], rcond=None)
        return np.array([x0, y0, tx, ty])


# ---------------------------------------------------------------------------
# Reference trajectories
# ---------------------------------------------------------------------------
@dataclass
class HitDerivatives:
    """Alignment derivatives of the two measurement rows of one hit."""
    row: int
    det: Alignable
    derivatives: np.ndarray  # (2, 6)


@dataclass
class ReferenceTrajectory:
    """Linearized measurement model around a reference track.

    Attributes:
        measurements: Stacked measured values.
        predictions: Values predicted by the reference track (no alignment).
        covariance: Measurement covariance.
        track_derivatives: d(prediction)/d(track parameters).
        hit_derivatives: Alignment derivatives per hit.
        rec_hits: Hits the trajectory was built from.
        reference_state: The reference track.
    """
    measurements: np.ndarray
    predictions: np.ndarray
    covariance: np.ndarray
    track_derivatives: np.ndarray
    hit_derivatives: List[HitDerivatives]
    rec_hits: List[Hit]
    reference_state: TrackState
    track_id: int = -1
    has_external_prediction: bool = False

    @property
    def n_measurements(self) -> int:
        return self.measurements.size

    @property
    def is_valid(self) -> bool:
        return self.n_measurements > self.track_derivatives.shape[1]

    def residuals(self) -> np.ndarray:
        return self.measurements - self.predictions

    def dets(self) -> List[Alignable]:
        return [hd.det for hd in self.hit_derivatives]


class ReferenceTrajectoryFactory:
    """Build one reference trajectory per refitted track.

    An external prediction, when present, is appended as a direct
    measurement of the four track parameters.

    Args:
        propagator: Propagator used to evaluate the reference track.
        min_measurements: Trajectories with fewer measurement rows are dropped.
        use_external_prediction: Ignore external predictions when False.
    """

    def __init__(self, propagator: Optional[StraightLinePropagator] = None,
                 min_measurements: int = 6, use_external_prediction: bool = True):
        self.propagator = propagator or StraightLinePropagator()
        self.min_measurements = min_measurements
        self.use_external_prediction = use_external_prediction

    def trajectories(self, navigator: AlignableNavigator,
                     traj_track_pairs: Sequence[Tuple[FittedTrajectory, Track]],
                     external_predictions: Sequence[Optional[TrackState]]
                     ) -> List[ReferenceTrajectory]:
        if len(traj_track_pairs) != len(external_predictions):
            raise ValueError("Track pairs and external predictions differ in length")
        result = []
        for (traj, track), external in zip(traj_track_pairs, external_predictions):
            if not self.use_external_prediction:
                external = None
            try:
                ref = self._build(navigator, traj, external)
            except TrajectoryFitError as exc:
                logger.debug("Reference trajectory for track %s dropped: %s",
                             track.track_id, exc)
                continue
            if ref.n_measurements < self.min_measurements or not ref.is_valid:
                continue
            result.append(ref)
        return result

    def _build(self, navigator: AlignableNavigator, traj: FittedTrajectory,
               external: Optional[TrackState]) -> ReferenceTrajectory:
        q = np.asarray(traj.state.parameters, dtype=float)
        dets = []
        for hit in traj.hits:
            det = navigator.alignable_from_hit(hit)
            if det is None:
                raise TrajectoryFitError(f"Unknown detector id {hit.det_id}")
            dets.append(det)
        surfaces = [d.surface for d in dets]

        local = _predict(q, surfaces, self.propagator)
        meas = [np.concatenate([np.asarray(h.measurement, dtype=float)[:2]
                                for h in traj.hits])]
        pred = [local[:, :2].reshape(-1)]
        var = np.concatenate([hit_local_variance(h, d) for h, d in zip(traj.hits, dets)])
        cov_blocks = [np.diag(var)]
        track_deriv = [_track_jacobian(q, surfaces, self.propagator)]

        hit_derivs = []
        for i, (det, (u, v, us, vs)) in enumerate(zip(dets, local)):
            hit_derivs.append(HitDerivatives(
                row=MEASUREMENT_DIM * i, det=det,
                derivatives=rigid_body_derivatives(u, v, us, vs)))

        if external is not None:
            meas.append(np.asarray(external.parameters, dtype=float))
            pred.append(q.copy())
            cov_blocks.append(np.asarray(external.covariance, dtype=float))
            track_deriv.append(np.eye(q.size))

        return ReferenceTrajectory(
            measurements=np.concatenate(meas),
            predictions=np.concatenate(pred),
            covariance=linalg.block_diag(*cov_blocks),
            track_derivatives=np.vstack(track_deriv),
            hit_derivatives=hit_derivs,
            rec_hits=list(traj.hits),
            reference_state=traj.state,
            track_id=traj.track_id,
            has_external_prediction=external is not None,
        )
