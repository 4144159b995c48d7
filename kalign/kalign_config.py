"""
KALIGN Configuration — YAML → Dataclasses → Tracking Setups
============================================================

Example::

    parameter_selection: ["Telescope/Plane*"]
    write_alignment_parameters: true
    output_file: output/alignment.json
    setups:
      - name: Tracking
        tracking: {region_ids: [1], min_hits: 4}
        updator: {type: KalmanAlignmentUpdator, max_chi2_ndof: 50.0}
    initialization:
      random_seed: 1726354
      rules:
        - name: Misalign
          alignable_selection: ["Telescope/Plane2"]
          apply_x_shifts: true

Defaults follow the historical option values of the estimator.

Author: KALIGN developers
"""

from __future__ import annotations

import yaml
import numpy as np
from dataclasses import dataclass, field, fields
from typing import Any, Dict, List, Optional, Type

from .kalign_errors import ConfigurationError
from .kalign_fitting import (
    ReferenceTrajectoryFactory, StraightLineFitter, StraightLinePropagator,
)
from .kalign_setup import HitCollectionPolicy, TrackingSetup
from .kalign_updator import KalmanAlignmentUpdator, SimpleMetricsUpdator


def _coerce(value: Any, type_name: str, where: str, key: str) -> Any:
    """Convert a scalar option to its declared type.

    YAML reads exponents without a decimal point (``1e-3``) as strings.
    """
    try:
        if type_name == 'float':
            if isinstance(value, bool):
                raise TypeError(type(value).__name__)
            return float(value)
        if type_name == 'int':
            if isinstance(value, bool) or (isinstance(value, float)
                                           and not value.is_integer()):
                raise TypeError(type(value).__name__)
            return int(value)
        if type_name == 'bool':
            if not isinstance(value, bool):
                raise TypeError(type(value).__name__)
            return value
        if type_name == 'List[int]':
            return [_coerce(v, 'int', where, key) for v in value]
    except (TypeError, ValueError) as exc:
        raise ConfigurationError(
            f"{where}: option '{key}' expects {type_name}, got {value!r}") from exc
    return value


def _checked_kwargs(cls: Type, data: Dict[str, Any], where: str) -> Dict[str, Any]:
    if not isinstance(data, dict):
        raise ConfigurationError(f"{where}: expected a mapping, got {type(data).__name__}")
    types = {f.name: str(f.type) for f in fields(cls)}
    unknown = sorted(set(data) - set(types))
    if unknown:
        raise ConfigurationError(f"{where}: unknown option(s) {unknown}")
    return {k: _coerce(v, types[k], where, k) for k, v in data.items()}


# ---------------------------------------------------------------------------
# Setup configuration
# ---------------------------------------------------------------------------
@dataclass
class PluginConfig:
    """Name of a registered implementation plus its constructor options."""
    type: str
    options: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]], default_type: str) -> 'PluginConfig':
        data = dict(data or {})
        return cls(type=data.pop('type', default_type), options=data)


@dataclass
class HitCollectionConfig:
    region_ids: List[int] = field(default_factory=list)
    min_hits: int = 3
    sort_inside_out: bool = True

    @classmethod
    def from_dict(cls, data: Dict[str, Any], where: str = "hit collection") -> 'HitCollectionConfig':
        return cls(**_checked_kwargs(cls, data, where))

    def to_policy(self) -> HitCollectionPolicy:
        return HitCollectionPolicy(frozenset(self.region_ids), self.min_hits,
                                   self.sort_inside_out)


@dataclass
class TrackingSetupConfig:
    name: str
    tracking: HitCollectionConfig
    external: Optional[HitCollectionConfig] = None
    fitter: PluginConfig = field(default_factory=lambda: PluginConfig('StraightLineFitter'))
    propagator: PluginConfig = field(default_factory=lambda: PluginConfig('StraightLinePropagator'))
    external_fitter: PluginConfig = field(default_factory=lambda: PluginConfig('StraightLineFitter'))
    external_propagator: PluginConfig = field(
        default_factory=lambda: PluginConfig('StraightLinePropagator'))
    trajectory_factory: PluginConfig = field(
        default_factory=lambda: PluginConfig('ReferenceTrajectoryFactory'))
    updator: PluginConfig = field(default_factory=lambda: PluginConfig('KalmanAlignmentUpdator'))
    metrics_updator: PluginConfig = field(
        default_factory=lambda: PluginConfig('SimpleMetricsUpdator'))

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'TrackingSetupConfig':
        kw = _checked_kwargs(cls, data, "setup")
        if 'name' not in kw or 'tracking' not in kw:
            raise ConfigurationError("setup: 'name' and 'tracking' are required")
        where = f"setup '{kw['name']}'"
        kw['tracking'] = HitCollectionConfig.from_dict(kw['tracking'], f"{where}.tracking")
        if kw.get('external') is not None:
            kw['external'] = HitCollectionConfig.from_dict(kw['external'], f"{where}.external")
        defaults = cls(name='', tracking=HitCollectionConfig())
        for key in ('fitter', 'propagator', 'external_fitter', 'external_propagator',
                    'trajectory_factory', 'updator', 'metrics_updator'):
            if key in kw:
                kw[key] = PluginConfig.from_dict(kw[key], getattr(defaults, key).type)
        return cls(**kw)


# ---------------------------------------------------------------------------
# Initialization configuration
# ---------------------------------------------------------------------------
@dataclass
class InitializationRule:
    """One named step of parameter initialization.

    Shifts are in the module's local frame; rotations are local Euler
    angles. ``*_start_error`` entries are variances on the diagonal of the
    starting covariance.
    """
    name: str
    alignable_selection: List[str] = field(default_factory=list)

    apply_x_shifts: bool = False
    apply_y_shifts: bool = False
    apply_z_shifts: bool = False
    apply_x_rotations: bool = False
    apply_y_rotations: bool = False
    apply_z_rotations: bool = False
    sigma_x_shifts: float = 4e-2
    sigma_y_shifts: float = 4e-2
    sigma_z_shifts: float = 4e-2
    sigma_x_rotations: float = 5e-4
    sigma_y_rotations: float = 5e-4
    sigma_z_rotations: float = 5e-4
    apply_curl: bool = False
    curl_constant: float = 1e-6
    # Draw the y shift with sigma_z_shifts and the z shift with sigma_y_shifts
    legacy_shift_axis_mapping: bool = False

    x_shifts_start_error: float = 4e-4
    y_shifts_start_error: float = 4e-4
    z_shifts_start_error: float = 4e-4
    x_rotations_start_error: float = 3e-5
    y_rotations_start_error: float = 3e-5
    z_rotations_start_error: float = 3e-5

    add_position_error: bool = False
    read_parameters_from_file: bool = False
    read_covariance_from_file: bool = False
    apply_parameters_from_file: bool = False
    apply_error_from_file: bool = False
    file_name: str = "Input.json"
    apply_random_start_values: bool = False

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'InitializationRule':
        kw = _checked_kwargs(cls, data, "initialization rule")
        if 'name' not in kw:
            raise ConfigurationError("initialization rule: 'name' is required")
        if isinstance(kw.get('alignable_selection'), str):
            kw['alignable_selection'] = [kw['alignable_selection']]
        return cls(**kw)

    @property
    def start_error(self) -> np.ndarray:
        return np.diag([
            self.x_shifts_start_error, self.y_shifts_start_error, self.z_shifts_start_error,
            self.x_rotations_start_error, self.y_rotations_start_error,
            self.z_rotations_start_error,
        ])

    @property
    def random_sigmas(self) -> np.ndarray:
        return np.array([
            self.sigma_x_shifts, self.sigma_y_shifts, self.sigma_z_shifts,
            self.sigma_x_rotations, self.sigma_y_rotations, self.sigma_z_rotations,
        ])

    @property
    def shift_sigmas(self) -> np.ndarray:
        """Sigma used for the x, y, z shift draws."""
        if self.legacy_shift_axis_mapping:
            return np.array([self.sigma_x_shifts, self.sigma_z_shifts, self.sigma_y_shifts])
        return np.array([self.sigma_x_shifts, self.sigma_y_shifts, self.sigma_z_shifts])

    @property
    def apply_shifts(self) -> bool:
        return self.apply_x_shifts or self.apply_y_shifts or self.apply_z_shifts

    @property
    def apply_rotations(self) -> bool:
        return self.apply_x_rotations or self.apply_y_rotations or self.apply_z_rotations

    @property
    def uses_file(self) -> bool:
        return (self.read_parameters_from_file or self.read_covariance_from_file
                or self.apply_parameters_from_file or self.apply_error_from_file)


@dataclass
class InitializationConfig:
    random_seed: int = 1726354
    update_graphs: int = 100
    rules: List[InitializationRule] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> 'InitializationConfig':
        kw = _checked_kwargs(cls, data or {}, "initialization")
        kw['rules'] = [InitializationRule.from_dict(r) for r in kw.get('rules', [])]
        names = [r.name for r in kw['rules']]
        if len(set(names)) != len(names):
            raise ConfigurationError(f"initialization: duplicate rule names {names}")
        return cls(**kw)


# ---------------------------------------------------------------------------
# Top level
# ---------------------------------------------------------------------------
@dataclass
class AlgorithmConfig:
    """Complete configuration of an alignment run."""
    setups: List[TrackingSetupConfig] = field(default_factory=list)
    initialization: InitializationConfig = field(default_factory=InitializationConfig)
    parameter_selection: List[str] = field(default_factory=lambda: ["*"])
    write_alignment_parameters: bool = False
    output_file: str = "Output.json"
    data_collector_file: Optional[str] = None
    timing_log_file: Optional[str] = None
    log_interval: int = 500

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'AlgorithmConfig':
        kw = _checked_kwargs(cls, data or {}, "configuration")
        kw['setups'] = [TrackingSetupConfig.from_dict(s) for s in kw.get('setups', [])]
        kw['initialization'] = InitializationConfig.from_dict(kw.get('initialization'))
        if isinstance(kw.get('parameter_selection'), str):
            kw['parameter_selection'] = [kw['parameter_selection']]
        return cls(**kw)


def load_config(path: str) -> AlgorithmConfig:
    """Load an AlgorithmConfig from a YAML file."""
    with open(path, 'r') as f:
        data = yaml.safe_load(f)
    return AlgorithmConfig.from_dict(data or {})


# ---------------------------------------------------------------------------
# Plugin registries
# ---------------------------------------------------------------------------
FITTERS: Dict[str, Type] = {'StraightLineFitter': StraightLineFitter}
PROPAGATORS: Dict[str, Type] = {'StraightLinePropagator': StraightLinePropagator}
TRAJECTORY_FACTORIES: Dict[str, Type] = {
    'ReferenceTrajectoryFactory': ReferenceTrajectoryFactory}
UPDATORS: Dict[str, Type] = {'KalmanAlignmentUpdator': KalmanAlignmentUpdator}
METRICS_UPDATORS: Dict[str, Type] = {'SimpleMetricsUpdator': SimpleMetricsUpdator}


def _make(registry: Dict[str, Type], plugin: PluginConfig, kind: str, setup: str):
    cls = registry.get(plugin.type)
    if cls is None:
        raise ConfigurationError(
            f"setup '{setup}': unknown {kind} '{plugin.type}' "
            f"(known: {sorted(registry)})")
    try:
        return cls(**plugin.options)
    except TypeError as exc:
        raise ConfigurationError(f"setup '{setup}': bad {kind} options: {exc}") from exc


def build_tracking_setup(cfg: TrackingSetupConfig) -> TrackingSetup:
    external = cfg.external.to_policy() if cfg.external is not None else None
    return TrackingSetup(
        name=cfg.name,
        fitter=_make(FITTERS, cfg.fitter, 'fitter', cfg.name),
        propagator=_make(PROPAGATORS, cfg.propagator, 'propagator', cfg.name),
        tracking=cfg.tracking.to_policy(),
        trajectory_factory=_make(TRAJECTORY_FACTORIES, cfg.trajectory_factory,
                                 'trajectory factory', cfg.name),
        alignment_updator=_make(UPDATORS, cfg.updator, 'updator', cfg.name),
        metrics_updator=_make(METRICS_UPDATORS, cfg.metrics_updator,
                              'metrics updator', cfg.name),
        external_fitter=(_make(FITTERS, cfg.external_fitter, 'external fitter', cfg.name)
                         if external is not None else None),
        external_propagator=(_make(PROPAGATORS, cfg.external_propagator,
                                   'external propagator', cfg.name)
                             if external is not None else None),
        external=external,
    )


def build_tracking_setups(config: AlgorithmConfig) -> List[TrackingSetup]:
    """Instantiate every configured tracking setup, in configuration order."""
    return [build_tracking_setup(s) for s in config.setups]
