"""
KALIGN Kalman Alignment Algorithm — Orchestration & Lifecycle
=============================================================

Per event:

    tracks ──► TrackRefitter ──► {setup: [tracklets]}
                                      │  one factory call per setup
                                      ▼
                           [reference trajectories]
                                      │  one at a time, in order
                                      ▼
                 updator.process(trajectory, store, navigator, metrics)

Trajectories are applied strictly sequentially: every update sees the
result of all previous ones, across setups and events.

Lifecycle::

    with AlignmentRun(config, [telescope]) as run:      # initialization
        for tracks in events:
            result = run.process(tracks)
            if not result.ok:
                ...                                      # terminate, re-raise
    # termination on scope exit

``run_alignment()`` is the ready-made driver of that loop.

Author: KALIGN developers
"""

from __future__ import annotations

import io as _io
import logging
from dataclasses import dataclass, field
from typing import Iterable, List, Optional, Sequence

from .kalign_config import AlgorithmConfig, build_tracking_setups
from .kalign_diagnostics import DataCollector, TimingReport
from .kalign_errors import AlignmentError, AlignmentRuntimeError
from .kalign_fitting import ReferenceTrajectory
from .kalign_geometry import Alignable, AlignableNavigator, canonical_order
from .kalign_initialization import ParameterInitializer, RandomContext, RuleSummary
from .kalign_io import AlignmentIO, IOStatus
from .kalign_parameters import AlignmentParameterStore
from .kalign_setup import TrackingSetup, Tracklet, TrackRefitter
from .kalign_tracks import Track

logger = logging.getLogger(__name__)

HISTOGRAM_PREFIX = "KalmanAlignmentAlgorithm"


@dataclass
class RunResult:
    """Outcome of processing one event."""
    ok: bool
    event_index: int
    n_tracklets: int = 0
    n_trajectories: int = 0
    reason: str = ""
    error: Optional[BaseException] = None


@dataclass
class TerminationSummary:
    """What termination found and persisted."""
    touched: List[Alignable] = field(default_factory=list)
    written: List[Alignable] = field(default_factory=list)
    output_iteration: Optional[int] = None

    @property
    def n_touched(self) -> int:
        return len(self.touched)


class KalmanAlignmentAlgorithm:
    """Online alignment estimator over a shared parameter store.

    Args:
        config: Run configuration.
        setups: Tracking setups; built from ``config.setups`` when omitted.
        io: Snapshot store for reading and writing parameters.
        collector: Diagnostic sink; one writing to
            ``config.data_collector_file`` is created when omitted.
    """

    def __init__(self, config: AlgorithmConfig,
                 setups: Optional[Sequence[TrackingSetup]] = None,
                 io: Optional[AlignmentIO] = None,
                 collector: Optional[DataCollector] = None):
        self.config = config
        self.setups = list(setups) if setups is not None else build_tracking_setups(config)
        self.io = io or AlignmentIO()
        self.collector = collector or DataCollector(config.data_collector_file)
        self.timing = TimingReport()
        self.refitter = TrackRefitter(self.setups)
        self.store: Optional[AlignmentParameterStore] = None
        self.navigator: Optional[AlignableNavigator] = None
        self.initializer: Optional[ParameterInitializer] = None
        self.rng: Optional[RandomContext] = None
        self.initialized = False
        self.terminated = False
        self.summary: Optional[TerminationSummary] = None

    # ------------------------------------------------------------------
    # Initialization
    # ------------------------------------------------------------------
    def initialize(self, alignables: Sequence[Alignable],
                   store: Optional[AlignmentParameterStore] = None) -> List[RuleSummary]:
        """Build the run context and run the initialization rules."""
        tops = list(alignables)
        if store is None:
            store = AlignmentParameterStore.create(tops, self.config.parameter_selection)
        self.store = store
        self.navigator = AlignableNavigator(tops)
        self.rng = RandomContext(self.config.initialization.random_seed)
        self.initializer = ParameterInitializer(self.config.initialization, self.io)
        logger.info("Initializing %d tracking setup(s), %d alignables with parameters",
                    len(self.setups), len(self.store))
        with self.timing.measure("initialize"):
            rules = self.initializer.initialize(tops, self.store, self.rng)
        self.initialized = True
        return rules

    # ------------------------------------------------------------------
    # Event processing
    # ------------------------------------------------------------------
    def run(self, tracks: Sequence[Track], event_index: int) -> RunResult:
        """Process one event. Failures are returned, not raised."""
        if not self.initialized or self.terminated:
            raise AlignmentError("Algorithm is not initialized or already terminated")
        if self.config.log_interval > 0 and event_index % self.config.log_interval == 0:
            logger.info("Event Nr. %d", event_index)

        n_tracklets = 0
        n_trajectories = 0
        try:
            with self.timing.measure("refit"):
                tracklets = self.refitter.refit_tracks(tracks, self.navigator)
            n_tracklets = len(tracklets)

            for setup, group in TrackRefitter.group_by_setup(tracklets).items():
                with self.timing.measure("trajectories"):
                    trajectories = self._build_trajectories(setup, group)
                with self.timing.measure("update"):
                    for trajectory in trajectories:
                        setup.alignment_updator.process(trajectory, self.store,
                                                        self.navigator,
                                                        setup.metrics_updator)
                        self.collector.fill_histogram("Trajectory_RecHits",
                                                      len(trajectory.rec_hits))
                        n_trajectories += 1
        except AlignmentError as exc:
            logger.error("Event %d failed: %s", event_index, exc)
            return RunResult(ok=False, event_index=event_index,
                             n_tracklets=n_tracklets, n_trajectories=n_trajectories,
                             reason=str(exc), error=exc)

        return RunResult(ok=True, event_index=event_index,
                         n_tracklets=n_tracklets, n_trajectories=n_trajectories)

    def _build_trajectories(self, setup: TrackingSetup,
                            tracklets: List[Tracklet]) -> List[ReferenceTrajectory]:
        pairs = [t.traj_track_pair for t in tracklets]
        external = [t.external_prediction for t in tracklets]
        return list(setup.trajectory_factory.trajectories(self.navigator, pairs, external))

    # ------------------------------------------------------------------
    # Termination
    # ------------------------------------------------------------------
    def touched_alignables(self) -> List[Alignable]:
        """Union of modules touched under any setup, in canonical order."""
        touched = set()
        for setup in self.setups:
            modules = setup.metrics_updator.touched_modules()
            logger.info("The metrics updator for setup '%s' holds %d alignables",
                        setup.name, len(modules))
            touched.update(modules)
        return sorted(touched, key=canonical_order)

    def terminate(self) -> TerminationSummary:
        """Finalize bookkeeping, persist, flush diagnostics, release the context.

        Diagnostics, the timing report and the release happen even when
        persisting fails; the error is then re-raised. Calling it again
        returns the first summary without doing anything.
        """
        if self.terminated:
            return self.summary
        self.terminated = True
        self.summary = TerminationSummary()
        if not self.initialized:
            self._release()
            return self.summary

        logger.info("terminate: start ...")
        touched = self.touched_alignables()
        to_write = []
        iteration = None
        persisted = False
        try:
            for ali in touched:
                params = ali.alignment_parameters
                if params is None:
                    continue
                user_variables = params.kalman_user_variables()
                if user_variables is not None and user_variables.n_updates > 0:
                    user_variables.finalize()
                    user_variables.histogram_parameters(HISTOGRAM_PREFIX, self.collector)
                    to_write.append(ali)

            if self.config.write_alignment_parameters:
                iteration = self._write_parameters(to_write)
            persisted = True
        finally:
            self.summary = TerminationSummary(touched=touched,
                                              written=to_write if persisted else [],
                                              output_iteration=iteration)
            self._flush_and_release()

        logger.info("terminate: ... done (%d touched, %d written)",
                    len(touched), len(to_write))
        return self.summary

    def _write_parameters(self, alignables: List[Alignable]) -> Optional[int]:
        output = self.config.output_file
        logger.info("Write data for %d alignables to %s", len(alignables), output)
        status = self.io.write_parameters(alignables, output, 1)
        if status == IOStatus.ITERATION_EXISTS:
            logger.warning("Iteration 1 exists in %s, writing to the next free iteration",
                           output)
            status = self.io.write_parameters(alignables, output, -1)
        if status == IOStatus.OK:
            return self.io.last_written_iteration
        return None

    def _flush_and_release(self) -> None:
        try:
            self.collector.write()
        finally:
            try:
                buf = _io.StringIO()
                self.timing.dump(buf)
                logger.info("Timing report:\n%s", buf.getvalue().rstrip())
                if self.config.timing_log_file:
                    self.timing.write(self.config.timing_log_file)
            finally:
                self._release()

    def _release(self) -> None:
        if self.navigator is not None:
            self.navigator.release()
        self.navigator = None


class AlignmentRun:
    """Run-scoped context: construction initializes, scope exit terminates.

    Example::

        with AlignmentRun(config, [telescope]) as run:
            for tracks in events:
                result = run.process(tracks)
    """

    def __init__(self, config: AlgorithmConfig, alignables: Sequence[Alignable],
                 setups: Optional[Sequence[TrackingSetup]] = None,
                 store: Optional[AlignmentParameterStore] = None,
                 io: Optional[AlignmentIO] = None,
                 collector: Optional[DataCollector] = None):
        self.algorithm = KalmanAlignmentAlgorithm(config, setups, io, collector)
        self.event_count = 0
        try:
            self.rule_summaries = self.algorithm.initialize(alignables, store)
        except BaseException:
            self.algorithm.terminate()
            raise

    def __enter__(self) -> 'AlignmentRun':
        return self

    def __exit__(self, exc_type, exc, tb) -> bool:
        self.algorithm.terminate()
        return False

    @property
    def store(self) -> AlignmentParameterStore:
        return self.algorithm.store

    @property
    def setups(self) -> List[TrackingSetup]:
        return self.algorithm.setups

    @property
    def collector(self) -> DataCollector:
        return self.algorithm.collector

    @property
    def initializer(self) -> ParameterInitializer:
        return self.algorithm.initializer

    def process(self, tracks: Sequence[Track]) -> RunResult:
        self.event_count += 1
        return self.algorithm.run(tracks, self.event_count)

    def terminate(self) -> TerminationSummary:
        return self.algorithm.terminate()


def run_alignment(config: AlgorithmConfig, alignables: Sequence[Alignable],
                  events: Iterable[Sequence[Track]],
                  setups: Optional[Sequence[TrackingSetup]] = None,
                  store: Optional[AlignmentParameterStore] = None,
                  io: Optional[AlignmentIO] = None,
                  collector: Optional[DataCollector] = None) -> TerminationSummary:
    """Initialize, process every event, terminate.

    Raises:
        AlignmentRuntimeError: An event failed; termination has already run.
    """
    with AlignmentRun(config, alignables, setups, store, io, collector) as run:
        for tracks in events:
            result = run.process(tracks)
            if not result.ok:
                run.terminate()
                raise AlignmentRuntimeError(
                    f"Event {result.event_index}: {result.reason}") from result.error
        return run.terminate()
