"""
KALIGN Sequential Alignment Update & Metrics Bookkeeping
=========================================================

KalmanAlignmentUpdator
    Applies one reference trajectory to the alignment parameters of every
    module it crosses. Track parameters are nuisance parameters and are
    profiled out of the measurement model:

        P     = W - W D (D^T W D)^-1 D^T W          W = V^-1
        G     = H^T P H
        a_new = (I + C G)^-1 (a + C H^T P r)
        C_new = (I + C G)^-1 C

    which is the information-filter update C_new^-1 = C^-1 + G written so
    that a singular (e.g. zero) prior covariance stays well defined.

SimpleMetricsUpdator
    Records which modules each trajectory touched and links modules seen
    on the same trajectory; the link graph gives a hop distance between
    modules.

Author: KALIGN developers
"""

from __future__ import annotations

import logging
import numpy as np
from collections import deque
from typing import Dict, List, Optional, Sequence, Set
from scipy import linalg

from .kalign_errors import UpdateError
from .kalign_fitting import ReferenceTrajectory
from .kalign_geometry import Alignable, AlignableNavigator, frame_to_frame_jacobian
from .kalign_parameters import AlignmentParameterStore

logger = logging.getLogger(__name__)


class SimpleMetricsUpdator:
    """Touched-module bookkeeping of one tracking setup.

    Args:
        max_distance: Hop distances beyond this are reported as ``None``.
    """

    def __init__(self, max_distance: int = 3):
        self.max_distance = max_distance
        self._alignables: Dict[int, Alignable] = {}
        self._links: Dict[int, Set[int]] = {}
        self.n_updates = 0

    def update(self, alignables: Sequence[Alignable]) -> None:
        self.n_updates += 1
        keys = []
        for ali in alignables:
            key = id(ali)
            if key not in self._alignables:
                self._alignables[key] = ali
                self._links[key] = set()
            keys.append(key)
        for key in keys:
            self._links[key].update(k for k in keys if k != key)

    def alignables(self) -> List[Alignable]:
        """Touched modules in first-seen order."""
        return list(self._alignables.values())

    def touched_modules(self) -> Set[Alignable]:
        return set(self._alignables.values())

    def distance(self, first: Alignable, second: Alignable) -> Optional[int]:
        """Hop distance in the link graph, ``None`` if unknown or too far."""
        start, goal = id(first), id(second)
        if start not in self._links or goal not in self._links:
            return None
        if start == goal:
            return 0
        seen = {start}
        queue = deque([(start, 0)])
        while queue:
            node, dist = queue.popleft()
            if dist >= self.max_distance:
                continue
            for nxt in self._links[node]:
                if nxt == goal:
                    return dist + 1
                if nxt not in seen:
                    seen.add(nxt)
                    queue.append((nxt, dist + 1))
        return None


class KalmanAlignmentUpdator:
    """Sequential Kalman update of module alignment parameters.

    Args:
        max_chi2_ndof: Trajectories whose profiled chi2/ndof exceeds this
            are skipped. ``None`` disables the cut.
        check_covariance: Skip modules whose updated covariance would get a
            negative diagonal element.
    """

    def __init__(self, max_chi2_ndof: Optional[float] = None,
                 check_covariance: bool = True):
        self.max_chi2_ndof = max_chi2_ndof
        self.check_covariance = check_covariance
        self.n_processed = 0
        self.n_accepted = 0

    def process(self, trajectory: ReferenceTrajectory,
                store: AlignmentParameterStore,
                navigator: AlignableNavigator,
                metrics: SimpleMetricsUpdator) -> bool:
        """Apply ``trajectory``. Returns True if any module was updated."""
        self.n_processed += 1

        alignables: List[Alignable] = []
        index: Dict[int, int] = {}
        rows = []
        for hd in trajectory.hit_derivatives:
            ali = store.alignable_from_det(hd.det)
            if ali is None:
                continue
            params = ali.alignment_parameters
            if params.size != hd.derivatives.shape[1]:
                raise UpdateError(
                    f"{ali.name}: {params.size} parameters, derivatives "
                    f"for {hd.derivatives.shape[1]}")
            if id(ali) not in index:
                index[id(ali)] = len(alignables)
                alignables.append(ali)
            rows.append((hd.row, index[id(ali)],
                         hd.derivatives @ frame_to_frame_jacobian(hd.det, ali)))

        if not alignables:
            return False

        n_meas = trajectory.n_measurements
        n_par = alignables[0].alignment_parameters.size
        H = np.zeros((n_meas, n_par * len(alignables)))
        for row, k, deriv in rows:
            H[row:row + deriv.shape[0], k * n_par:(k + 1) * n_par] += deriv

        V = trajectory.covariance
        D = trajectory.track_derivatives
        r = trajectory.residuals()
        if V.shape != (n_meas, n_meas) or D.shape[0] != n_meas or r.size != n_meas:
            raise UpdateError(
                f"Inconsistent trajectory dimensions: V{V.shape}, D{D.shape}, r{r.shape}")

        try:
            W = linalg.inv(V)
            WD = W @ D
            P = W - WD @ linalg.solve(D.T @ WD, WD.T, assume_a='sym')
        except (linalg.LinAlgError, ValueError) as exc:
            raise UpdateError(f"Track projection failed: {exc}") from exc

        ndof = n_meas - D.shape[1]
        chi2 = float(r @ P @ r)
        if self.max_chi2_ndof is not None and ndof > 0 and chi2 / ndof > self.max_chi2_ndof:
            logger.debug("Trajectory %d rejected: chi2/ndof = %.2f",
                         trajectory.track_id, chi2 / ndof)
            return False

        a0 = np.concatenate([ali.alignment_parameters.parameters for ali in alignables])
        C0 = linalg.block_diag(*[ali.alignment_parameters.covariance for ali in alignables])
        G = H.T @ P @ H
        A = np.eye(a0.size) + C0 @ G
        try:
            a_new = linalg.solve(A, a0 + C0 @ H.T @ P @ r)
            C_new = linalg.solve(A, C0)
        except (linalg.LinAlgError, ValueError) as exc:
            raise UpdateError(f"Parameter update failed: {exc}") from exc
        C_new = 0.5 * (C_new + C_new.T)

        updated = []
        for k, ali in enumerate(alignables):
            block = slice(k * n_par, (k + 1) * n_par)
            cov = C_new[block, block]
            if self.check_covariance and np.any(np.diag(cov) < 0):
                logger.warning("Negative variance for %s, update skipped", ali.name)
                continue
            new_params = ali.alignment_parameters.clone(a_new[block], cov)
            user_variables = new_params.kalman_user_variables()
            if user_variables is not None:
                user_variables.update(new_params)
            store.update_parameters(ali, new_params)
            updated.append(ali)

        metrics.update(alignables)
        self.n_accepted += 1
        return bool(updated)
