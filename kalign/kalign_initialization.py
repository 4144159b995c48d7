"""
KALIGN Parameter Initialization
===============================

Runs the configured initialization rules once, before the first event.
For every rule, in order:

  1. select modules by name pattern
  2. sort them into the canonical module order
  3. optionally read stored parameters, iteration 1, 2, ... until a read fails
  4. optionally misalign the geometry at random (shifts, rotations, curl)
  5. seed fresh parameters and bookkeeping for modules with a parameter slot
  6. optionally apply stored shifts/rotations and position errors to the geometry
  7. optionally perturb the seeded start values at random
  8. clear the selection

The random source is an explicit RandomContext. Draws happen only for
enabled axes, module by module, in the order x/y/z shift, x/y/z rotation,
then the start-value perturbation. The same seed and rules therefore give
identical results.

Author: KALIGN developers
"""

from __future__ import annotations

import logging
import numpy as np
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence

from .kalign_config import InitializationConfig, InitializationRule
from .kalign_errors import ConfigurationError
from .kalign_geometry import (
    Alignable, AlignmentPositionError, canonical_order, euler_angles_to_matrix,
)
from .kalign_io import AlignmentIO, IOStatus
from .kalign_parameters import (
    AlignmentParameters, AlignmentParameterSelector, AlignmentParameterStore,
    KalmanUserVariables,
)

logger = logging.getLogger(__name__)

# Stored rotations with a smaller squared norm are not applied
MIN_ROTATION_NORMSQ = 1e-10


class RandomContext:
    """Seeded Gaussian source threaded through every random consumer."""

    def __init__(self, seed: int):
        self.seed = int(seed)
        self._rng = np.random.RandomState(self.seed)
        self.n_draws = 0

    def gauss(self) -> float:
        self.n_draws += 1
        return float(self._rng.standard_normal())


@dataclass
class RuleSummary:
    """What one initialization rule did."""
    name: str
    n_selected: int = 0
    n_seeded: int = 0
    n_seeded_from_file: int = 0
    n_iterations_read: int = 0
    n_applied: int = 0
    n_flagged: int = 0
    n_randomized: int = 0


class ParameterInitializer:
    """Seed, misalign or restore alignment state according to the rules.

    Attributes:
        misalignments: Injected ``(du, dv, dw, alpha, beta, gamma)`` per
            module name, summed over rules.
    """

    def __init__(self, config: InitializationConfig, io: Optional[AlignmentIO] = None):
        self.config = config
        self.io = io or AlignmentIO()
        self.misalignments: Dict[str, np.ndarray] = {}

    def initialize(self, alignables: Sequence[Alignable],
                   store: AlignmentParameterStore,
                   rng: RandomContext) -> List[RuleSummary]:
        selector = AlignmentParameterSelector(alignables)
        summaries = []
        for rule in self.config.rules:
            try:
                summaries.append(self._apply_rule(rule, selector, store, rng))
            finally:
                selector.clear()
        return summaries

    def _apply_rule(self, rule: InitializationRule,
                    selector: AlignmentParameterSelector,
                    store: AlignmentParameterStore,
                    rng: RandomContext) -> RuleSummary:
        summary = RuleSummary(rule.name)
        for pattern in rule.alignable_selection:
            n = selector.add_selection(pattern)
            logger.info("[%s] add selection: %s (%d alignables)", rule.name, pattern, n)

        selected = sorted(selector.selected_alignables(), key=canonical_order)
        summary.n_selected = len(selected)

        snapshots: Dict[Alignable, List[AlignmentParameters]] = {}
        if rule.uses_file:
            snapshots, summary.n_iterations_read = self._read_snapshots(rule, selected)

        if rule.apply_random_start_values:
            logger.warning("[%s] adding random start values", rule.name)

        for ali in selected:
            self._misalign(ali, rule, rng)

            if rule.add_position_error:
                sigmas = np.sqrt(np.diag(rule.start_error)[:3])
                ali.set_alignment_position_error(
                    AlignmentPositionError.from_local(ali.surface, sigmas))

            records = snapshots.get(ali, [])
            if ali.alignment_parameters is not None:
                from_file = self._seed(ali, rule, records, store)
                summary.n_seeded += 1
                summary.n_seeded_from_file += int(from_file)

            if (rule.apply_parameters_from_file or rule.apply_error_from_file) and records:
                summary.n_applied += 1
                if self._apply_from_file(ali, rule, records, store):
                    summary.n_flagged += 1

            if rule.apply_random_start_values and ali.alignment_parameters is not None:
                self._randomize_start_values(ali, rule, store, rng)
                summary.n_randomized += 1

        logger.info("[%s] set the alignment flag for %d alignables", rule.name,
                    summary.n_flagged)
        logger.info("[%s] number of applied parameters: %d", rule.name, summary.n_applied)
        return summary

    # --- step 3 -----------------------------------------------------------

    def _read_snapshots(self, rule: InitializationRule, selected: List[Alignable]):
        snapshots: Dict[Alignable, List[AlignmentParameters]] = {}
        iteration = 1
        while True:
            records, status = self.io.read_parameters(selected, rule.file_name, iteration)
            logger.info("[%s] read %s iteration %d: %d records, status %d",
                        rule.name, rule.file_name, iteration, len(records), int(status))
            if status != IOStatus.OK:
                break
            for rec in records:
                snapshots.setdefault(rec.alignable, []).append(rec)
            iteration += 1
        return snapshots, iteration - 1

    # --- step 4 -----------------------------------------------------------

    def _misalign(self, ali: Alignable, rule: InitializationRule, rng: RandomContext) -> None:
        shift_sigmas = rule.shift_sigmas
        displacement = np.array([
            shift_sigmas[0] * rng.gauss() if rule.apply_x_shifts else 0.0,
            shift_sigmas[1] * rng.gauss() if rule.apply_y_shifts else 0.0,
            shift_sigmas[2] * rng.gauss() if rule.apply_z_shifts else 0.0,
        ])
        if rule.apply_shifts:
            ali.move(ali.surface.to_global(displacement))

        angles = np.array([
            rule.sigma_x_rotations * rng.gauss() if rule.apply_x_rotations else 0.0,
            rule.sigma_y_rotations * rng.gauss() if rule.apply_y_rotations else 0.0,
            rule.sigma_z_rotations * rng.gauss() if rule.apply_z_rotations else 0.0,
        ])
        if rule.apply_rotations:
            ali.rotate_in_local_frame(euler_angles_to_matrix(angles))

        if rule.apply_curl:
            position = ali.global_position()
            ali.rotate_around_global_z(rule.curl_constant * np.hypot(position[0], position[1]))

        if rule.apply_shifts or rule.apply_rotations:
            total = self.misalignments.get(ali.name, np.zeros(6))
            self.misalignments[ali.name] = total + np.concatenate([displacement, angles])

    # --- step 5 -----------------------------------------------------------

    def _seed(self, ali: Alignable, rule: InitializationRule,
              records: List[AlignmentParameters],
              store: AlignmentParameterStore) -> bool:
        current = ali.alignment_parameters
        start_error = rule.start_error
        if current.size != start_error.shape[0]:
            raise ConfigurationError(
                f"[{rule.name}] {ali.name}: {current.size} parameters, "
                f"start error has {start_error.shape[0]}")

        latest = records[-1] if records else None
        use_params = rule.read_parameters_from_file and latest is not None
        use_covariance = rule.read_covariance_from_file and latest is not None

        parameters = latest.parameters if use_params else np.zeros(current.size)
        covariance = latest.covariance if use_covariance else start_error
        user_variables = KalmanUserVariables(ali, self.config.update_graphs)
        seeded = current.clone(parameters, covariance, user_variables=user_variables)
        if use_params or use_covariance:
            user_variables.update(seeded)
        store.update_parameters(ali, seeded)
        return use_params or use_covariance

    # --- step 6 -----------------------------------------------------------

    def _apply_from_file(self, ali: Alignable, rule: InitializationRule,
                         records: List[AlignmentParameters],
                         store: AlignmentParameterStore) -> bool:
        for rec in records:
            rigid = rec.as_rigid_body()
            if rigid is None:
                raise ConfigurationError(
                    f"[{rule.name}] {ali.name}: stored parameters of kind "
                    f"'{rec.kind.value}' cannot be applied, rigid-body parameters required")

            if rule.apply_parameters_from_file:
                ali.move(ali.surface.to_global(rigid.translation()))
                angles = rigid.rotation()
                if angles @ angles > MIN_ROTATION_NORMSQ:
                    ali.rotate_in_local_frame(euler_angles_to_matrix(angles))

            if rule.apply_error_from_file:
                sigmas = np.sqrt(np.abs(np.diag(rigid.covariance)[:3]))
                ali.set_alignment_position_error(
                    AlignmentPositionError.from_local(ali.surface, sigmas))

        current = ali.alignment_parameters
        user_variables = current.kalman_user_variables() if current is not None else None
        if user_variables is None:
            return False
        flagged = user_variables.clone()
        flagged.set_alignment_flag(True)
        store.update_parameters(ali, current.clone(current.parameters, current.covariance,
                                                   user_variables=flagged))
        return True

    # --- step 7 -----------------------------------------------------------

    def _randomize_start_values(self, ali: Alignable, rule: InitializationRule,
                                store: AlignmentParameterStore,
                                rng: RandomContext) -> None:
        current = ali.alignment_parameters
        sigmas = rule.random_sigmas
        noise = np.array([sigmas[i] * rng.gauss() for i in range(current.size)])
        store.update_parameters(ali, current.clone(current.parameters + noise,
                                                   current.covariance))
