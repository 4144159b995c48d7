"""KALIGN 1.0.0: Online Kalman-filter alignment of tracking detectors.

Refits every track under each configured tracking setup, builds reference
trajectories and updates the rigid-body alignment parameters of the
crossed modules one trajectory at a time.

Quick Start::

    from kalign import AlignmentRun, load_config, build_telescope
    telescope = build_telescope(n_planes=6)
    with AlignmentRun(load_config("configs/alignment.yaml"), [telescope]) as run:
        for tracks in events:
            run.process(tracks)

Author: KALIGN developers
"""

__version__ = "1.0.0"
__license__ = "AGPL-3.0-or-later"

# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------
from .kalign_errors import (
    AlignmentError,
    ConfigurationError,
    TrajectoryFitError,
    UpdateError,
    AlignmentRuntimeError,
)

# ---------------------------------------------------------------------------
# Geometry, parameters, tracks
# ---------------------------------------------------------------------------
from .kalign_geometry import (
    Alignable,
    AlignableNavigator,
    AlignableSurface,
    AlignmentPositionError,
    build_telescope,
    canonical_order,
    euler_angles_to_matrix,
)
from .kalign_parameters import (
    AlignmentParameters,
    RigidBodyAlignmentParameters,
    KalmanUserVariables,
    AlignmentParameterSelector,
    AlignmentParameterStore,
)
from .kalign_tracks import Hit, Track, TrackState, FittedTrajectory

# ---------------------------------------------------------------------------
# Tracking setups, refit, update
# ---------------------------------------------------------------------------
from .kalign_fitting import (
    StraightLineFitter,
    StraightLinePropagator,
    ReferenceTrajectory,
    ReferenceTrajectoryFactory,
)
from .kalign_setup import HitCollectionPolicy, TrackingSetup, Tracklet, TrackRefitter
from .kalign_updator import KalmanAlignmentUpdator, SimpleMetricsUpdator

# ---------------------------------------------------------------------------
# Configuration, persistence, diagnostics
# ---------------------------------------------------------------------------
from .kalign_config import (
    AlgorithmConfig,
    InitializationConfig,
    InitializationRule,
    TrackingSetupConfig,
    HitCollectionConfig,
    build_tracking_setups,
    load_config,
)
from .kalign_io import AlignmentIO, IOStatus
from .kalign_diagnostics import DataCollector, TimingReport

# ---------------------------------------------------------------------------
# Run lifecycle
# ---------------------------------------------------------------------------
from .kalign_initialization import ParameterInitializer, RandomContext, RuleSummary
from .kalign_algorithm import (
    KalmanAlignmentAlgorithm,
    AlignmentRun,
    RunResult,
    TerminationSummary,
    run_alignment,
)

__all__ = [
    "AlignmentError", "ConfigurationError", "TrajectoryFitError", "UpdateError",
    "AlignmentRuntimeError",
    "Alignable", "AlignableNavigator", "AlignableSurface", "AlignmentPositionError",
    "build_telescope", "canonical_order", "euler_angles_to_matrix",
    "AlignmentParameters", "RigidBodyAlignmentParameters", "KalmanUserVariables",
    "AlignmentParameterSelector", "AlignmentParameterStore",
    "Hit", "Track", "TrackState", "FittedTrajectory",
    "StraightLineFitter", "StraightLinePropagator", "ReferenceTrajectory",
    "ReferenceTrajectoryFactory",
    "HitCollectionPolicy", "TrackingSetup", "Tracklet", "TrackRefitter",
    "KalmanAlignmentUpdator", "SimpleMetricsUpdator",
    "AlgorithmConfig", "InitializationConfig", "InitializationRule",
    "TrackingSetupConfig", "HitCollectionConfig", "build_tracking_setups", "load_config",
    "AlignmentIO", "IOStatus", "DataCollector", "TimingReport",
    "ParameterInitializer", "RandomContext", "RuleSummary",
    "KalmanAlignmentAlgorithm", "AlignmentRun", "RunResult", "TerminationSummary",
    "run_alignment",
]
