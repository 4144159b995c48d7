#!/usr/bin/env python3
"""
KALIGN Demo — Recover a Misaligned Telescope Plane
===================================================

Run with:
    python -m kalign.demo                          # built-in configuration
    python -m kalign.demo --config configs/alignment.yaml
    python -m kalign.demo --shift 0.02 --events 50 --tracks 20

Simulates straight tracks through a six-plane telescope, shifts the
reconstruction geometry of the middle planes and lets the Kalman
alignment estimate the corrections. The first and last planes are kept
fixed as reference.

Author: KALIGN developers
"""

import argparse
import logging
import sys

import numpy as np

from .kalign_algorithm import run_alignment
from .kalign_config import (
    AlgorithmConfig, HitCollectionConfig, InitializationConfig,
    InitializationRule, TrackingSetupConfig, load_config,
)
from .kalign_errors import AlignmentError
from .kalign_geometry import build_telescope
from .kalign_simulation import TrackSimulator, estimated_offsets, misaligned_copy

logger = logging.getLogger("kalign.demo")


def default_config(seed: int = 1726354) -> AlgorithmConfig:
    """One tracking setup, planes 1-4 free, start errors from the defaults."""
    return AlgorithmConfig(
        setups=[TrackingSetupConfig(
            name="Telescope", tracking=HitCollectionConfig(region_ids=[1], min_hits=4))],
        initialization=InitializationConfig(
            random_seed=seed,
            rules=[InitializationRule(name="Seed",
                                      alignable_selection=["Telescope/Plane[1-4]"])]),
        parameter_selection=["Telescope/Plane[1-4]"],
        log_interval=10,
    )


def run_demo(config: AlgorithmConfig, shift: float = 0.01, n_events: int = 20,
             tracks_per_event: int = 10, seed: int = 42) -> dict:
    """Run the alignment and return ``{plane: (injected du, estimated du)}``."""
    truth = build_telescope()
    injected = {"Telescope/Plane2": [shift, 0, 0, 0, 0, 0],
                "Telescope/Plane3": [0, -shift, 0, 0, 0, 0]}
    reco = misaligned_copy(truth, injected)

    simulator = TrackSimulator([truth], seed=seed)
    run_alignment(config, [reco], simulator.events(n_events, tracks_per_event))

    results = {}
    for name, estimate in estimated_offsets([reco]).items():
        if estimate is None:
            continue
        results[name] = (np.asarray(injected.get(name, np.zeros(6)), dtype=float), estimate)
    return results


def main(argv=None):
    parser = argparse.ArgumentParser(
        description='KALIGN Demo — Kalman alignment of a simulated telescope',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python -m kalign.demo
  python -m kalign.demo --config configs/alignment.yaml
  python -m kalign.demo --shift 0.05 --events 100
""")
    parser.add_argument('--config', '-c', type=str, default=None,
                        help='YAML configuration (default: built-in)')
    parser.add_argument('--shift', type=float, default=0.01,
                        help='Injected shift of planes 2 (u) and 3 (v)')
    parser.add_argument('--events', '-n', type=int, default=20,
                        help='Number of simulated events')
    parser.add_argument('--tracks', '-t', type=int, default=10,
                        help='Tracks per event')
    parser.add_argument('--seed', type=int, default=42,
                        help='Simulation seed')
    parser.add_argument('--verbose', '-v', action='store_true')

    args = parser.parse_args(argv)
    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.INFO,
                        format='%(asctime)s %(name)s %(levelname)s: %(message)s')

    config = load_config(args.config) if args.config else default_config()
    try:
        results = run_demo(config, args.shift, args.events, args.tracks, args.seed)
    except AlignmentError as exc:
        logger.error("Alignment failed: %s", exc)
        return 1

    print(f"\n{'module':<20s} {'injected du':>12s} {'est. du':>12s} "
          f"{'injected dv':>12s} {'est. dv':>12s}")
    print("-" * 72)
    for name, (injected, estimate) in sorted(results.items()):
        print(f"{name:<20s} {injected[0]:>12.5f} {estimate[0]:>12.5f} "
              f"{injected[1]:>12.5f} {estimate[1]:>12.5f}")
    print("\nEstimated corrections have the opposite sign of the injected offsets.")
    return 0


if __name__ == '__main__':
    sys.exit(main())
