"""
KALIGN Tracking Setups & Track Refitting
========================================

A tracking setup is a named, independent lens over the input tracks: it
claims the hits of some detector regions, refits them with its own fitter
and feeds the result to its own updator and metrics bookkeeping. Setups
share only the alignment parameter store.

Author: KALIGN developers
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

import numpy as np
from typing import Any, Dict, FrozenSet, Iterable, List, Optional, Sequence, Tuple

from .kalign_errors import TrajectoryFitError
from .kalign_geometry import AlignableNavigator
from .kalign_tracks import FittedTrajectory, Hit, Track, TrackState

logger = logging.getLogger(__name__)


def hit_radius(hit: Hit, navigator: Optional[AlignableNavigator] = None) -> float:
    """Distance of a hit from the global origin.

    Hits without a stored global position are placed on their module's
    surface through ``navigator``.
    """
    if hit.global_position is not None:
        return hit.radius
    ali = navigator.alignable_from_hit(hit) if navigator is not None else None
    if ali is None:
        raise TrajectoryFitError(
            f"hit on det_id {hit.det_id} has no global position and no known module")
    local = np.array([hit.measurement[0], hit.measurement[1], 0.0])
    return float(np.linalg.norm(ali.surface.to_global_point(local)))


@dataclass(frozen=True)
class HitCollectionPolicy:
    """Which hits a setup claims, and how many it needs.

    Attributes:
        region_ids: Detector-region ids belonging to this collection.
        min_hits: Tracks with fewer qualifying hits are rejected.
        sort_inside_out: Order hits by increasing distance from the origin.
    """
    region_ids: FrozenSet[int]
    min_hits: int = 3
    sort_inside_out: bool = True

    def __post_init__(self):
        object.__setattr__(self, 'region_ids', frozenset(int(r) for r in self.region_ids))
        if self.min_hits < 0:
            raise ValueError(f"min_hits must be >= 0, got {self.min_hits}")

    def accepts(self, hit: Hit) -> bool:
        return hit.region_id in self.region_ids

    def select(self, hits: Iterable[Hit],
               navigator: Optional[AlignableNavigator] = None) -> List[Hit]:
        """Qualifying hits, re-ordered if ``sort_inside_out`` is set."""
        selected = [h for h in hits if self.accepts(h)]
        if self.sort_inside_out:
            selected.sort(key=lambda h: hit_radius(h, navigator))
        return selected


@dataclass(frozen=True, eq=False)
class TrackingSetup:
    """Immutable configuration of one estimation context.

    Setups compare and hash by identity so they can key per-event groups.
    """
    name: str
    fitter: Any
    propagator: Any
    tracking: HitCollectionPolicy
    trajectory_factory: Any
    alignment_updator: Any
    metrics_updator: Any
    external_fitter: Any = None
    external_propagator: Any = None
    external: Optional[HitCollectionPolicy] = None

    def __repr__(self) -> str:
        return f"TrackingSetup({self.name!r})"

    @property
    def has_external_tracking(self) -> bool:
        return self.external is not None and self.external_fitter is not None

    def use_for_tracking(self, hit: Hit) -> bool:
        return self.tracking.accepts(hit)

    def use_for_external_tracking(self, hit: Hit) -> bool:
        return self.external is not None and self.external.accepts(hit)

    @property
    def min_tracking_hits(self) -> int:
        return self.tracking.min_hits

    @property
    def min_external_hits(self) -> int:
        return self.external.min_hits if self.external is not None else 0


@dataclass
class Tracklet:
    """One track refitted under one tracking setup."""
    trajectory: FittedTrajectory
    track: Track
    tracking_setup: TrackingSetup
    external_prediction: Optional[TrackState] = None

    @property
    def traj_track_pair(self) -> Tuple[FittedTrajectory, Track]:
        return self.trajectory, self.track


@dataclass
class RefitStatistics:
    """Per-setup counters of the refitter."""
    n_tracks: int = 0
    n_too_few_hits: int = 0
    n_fit_failures: int = 0
    n_tracklets: int = 0
    n_external: int = 0


class TrackRefitter:
    """Refit input tracks under every registered tracking setup.

    Setups are visited in registration order and tracks in input order, so
    the output is deterministic for identical input.
    """

    def __init__(self, setups: Sequence[TrackingSetup]):
        names = [s.name for s in setups]
        if len(set(names)) != len(names):
            raise ValueError(f"Tracking setup names must be unique: {names}")
        self._setups = list(setups)
        self.statistics: Dict[str, RefitStatistics] = {
            s.name: RefitStatistics() for s in self._setups}

    @property
    def tracking_setups(self) -> List[TrackingSetup]:
        return list(self._setups)

    def refit_tracks(self, tracks: Sequence[Track],
                     navigator: AlignableNavigator) -> List[Tracklet]:
        tracklets = []
        for setup in self._setups:
            stats = self.statistics[setup.name]
            for track in tracks:
                stats.n_tracks += 1
                tracklet = self._refit(setup, track, navigator, stats)
                if tracklet is not None:
                    stats.n_tracklets += 1
                    tracklets.append(tracklet)
        return tracklets

    def _refit(self, setup: TrackingSetup, track: Track,
               navigator: AlignableNavigator,
               stats: RefitStatistics) -> Optional[Tracklet]:
        try:
            hits = setup.tracking.select(track.hits, navigator)
        except TrajectoryFitError as exc:
            stats.n_fit_failures += 1
            logger.debug("[%s] track %s dropped: %s", setup.name, track.track_id, exc)
            return None
        if len(hits) < setup.tracking.min_hits:
            stats.n_too_few_hits += 1
            return None
        try:
            trajectory = setup.fitter.fit(hits, setup.propagator, navigator,
                                          track_id=track.track_id)
        except TrajectoryFitError as exc:
            stats.n_fit_failures += 1
            logger.debug("[%s] track %s dropped: %s", setup.name, track.track_id, exc)
            return None

        external = None
        if setup.has_external_tracking:
            try:
                external_hits = setup.external.select(track.hits, navigator)
            except TrajectoryFitError as exc:
                logger.debug("[%s] external hits of track %s unusable: %s",
                             setup.name, track.track_id, exc)
                external_hits = []
            if len(external_hits) >= setup.external.min_hits:
                try:
                    external = setup.external_fitter.fit(
                        external_hits, setup.external_propagator, navigator,
                        track_id=track.track_id).state
                    stats.n_external += 1
                except TrajectoryFitError as exc:
                    logger.debug("[%s] external fit of track %s failed: %s",
                                 setup.name, track.track_id, exc)

        return Tracklet(trajectory=trajectory, track=track,
                        tracking_setup=setup, external_prediction=external)

    @staticmethod
    def group_by_setup(tracklets: Iterable[Tracklet]
                       ) -> Dict[TrackingSetup, List[Tracklet]]:
        """Group tracklets by producing setup, keeping input order."""
        groups: Dict[TrackingSetup, List[Tracklet]] = {}
        for tracklet in tracklets:
            groups.setdefault(tracklet.tracking_setup, []).append(tracklet)
        return groups
