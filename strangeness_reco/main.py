#!/usr/bin/env python3
r"""
Strangeness reconstruction runner.

Loads one or more time-frame directories, reconciles the selection cuts
with the declared downstream consumers, builds V0 and cascade candidates
and writes them as CSV tables.

Configuration
-------------
A JSON file with the optional sections

.. code-block:: json

   {
     "cuts":       {"v0_cospa": 0.99, "create_covariance": true},
     "solver":     {"max_iterations": 30},
     "conditions": {"default": {"bz": -5.0}},
     "consumers":  {"lambda-analysis": {"v0setting_cospa": 0.97}},
     "autodetect": true
   }

CLI overview
------------
.. code-block:: bash

   strangeness-reco -i data/tf_001 data/tf_002 -c config.json -o out/ --workers 4
   strangeness-reco -i data/tf_001 --bz -5 --no-cascades -v
"""

from __future__ import annotations

import argparse
import logging
from pathlib import Path
from typing import Any, List, Mapping, MutableMapping, Optional, Sequence

import orjson
import pandas as pd

from strangeness_reco.conditions import RunContextProvider, StaticConditionsSource
from strangeness_reco.data import load_time_frame
from strangeness_reco.errors import ConfigurationError, StrangenessRecoError
from strangeness_reco.metrics import JsonLinesMetricsSink, LoggingMetricsSink, summarize
from strangeness_reco.parallel_builder import ParallelTimeFrameBuilder
from strangeness_reco.profiling import prof
from strangeness_reco.selection import CutConfiguration, RequirementRegistry, SelectionNegotiator
from strangeness_reco.solver import SolverConfig
from strangeness_reco.time_frame_builder import TimeFrameBuilder, TimeFrameResult

logger = logging.getLogger(__name__)

CONFIG_SECTIONS = ("cuts", "solver", "conditions", "consumers", "autodetect")


def build_parser() -> argparse.ArgumentParser:
    """Construct the command-line interface."""
    p = argparse.ArgumentParser(description="Build V0 and cascade candidates from time-frame tables.")
    p.add_argument("-i", "--input", nargs="+", required=True,
                   help="Time-frame directories (tracks.csv, collisions.csv, v0s.csv[, cascades.csv]).")
    p.add_argument("-c", "--config", type=str, default=None,
                   help="JSON config with cuts/solver/conditions/consumers sections.")
    p.add_argument("-o", "--output", type=str, default=None,
                   help="Directory for v0s.csv and cascades.csv (default: no output files).")
    p.add_argument("--workers", type=int, default=1,
                   help="Time frames processed concurrently (default: 1).")
    p.add_argument("--no-cascades", dest="cascades", action="store_false", default=True,
                   help="Only build V0s.")
    p.add_argument("--bz", type=float, default=None,
                   help="Magnetic field override in kG; skips the conditions lookup.")
    p.add_argument("--metrics-out", type=str, default=None,
                   help="Append per-time-frame counters to this JSON-lines file instead of the log.")
    p.add_argument("--profile", action="store_true", default=False,
                   help="Profile the processing loop with cProfile.")
    p.add_argument("--profile-out", type=str, default=None,
                   help="Write the profile table to this file instead of the log.")
    p.add_argument("-v", "--verbose", action="store_true", default=False,
                   help="Verbose (DEBUG) logging.")
    return p


def setup_logging(verbose: bool = False) -> None:
    """
    Configure process-wide logging.

    Format is ``'%(asctime)s | %(levelname)-8s | %(message)s'`` with
    ``%H:%M:%S`` timestamps; ``verbose`` selects DEBUG over INFO.
    """
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s | %(levelname)-8s | %(message)s",
        datefmt="%H:%M:%S",
    )


def load_config(config_path: Optional[Path]) -> MutableMapping[str, Any]:
    """
    Load the JSON configuration with :mod:`orjson`.

    Raises
    ------
    ConfigurationError
        If the file cannot be read or parsed, or has unknown sections.
    """
    if config_path is None:
        return {}
    try:
        cfg = orjson.loads(Path(config_path).read_bytes())
    except (OSError, orjson.JSONDecodeError) as e:
        raise ConfigurationError(f"Failed to parse {config_path}: {e}") from e
    if not isinstance(cfg, dict):
        raise ConfigurationError(f"{config_path}: top level must be an object")
    unknown = sorted(set(cfg) - set(CONFIG_SECTIONS))
    if unknown:
        raise ConfigurationError(f"{config_path}: unknown sections {', '.join(unknown)}")
    return cfg


def negotiate_cuts(config: Mapping[str, Any]) -> CutConfiguration:
    """Static cuts from ``config['cuts']`` reconciled with ``config['consumers']``."""
    static = CutConfiguration.from_mapping(config.get("cuts"))
    registry = RequirementRegistry()
    for consumer, options in (config.get("consumers") or {}).items():
        registry.publish_options(consumer, options)
    return SelectionNegotiator(static, registry, enabled=bool(config.get("autodetect", True))).negotiate()


def write_outputs(results: Sequence[TimeFrameResult], out_dir: Path, include_covariance: bool) -> None:
    out_dir.mkdir(parents=True, exist_ok=True)
    for name, frames in (("v0s", [r.v0_frame(include_covariance).assign(time_frame_id=r.time_frame_id)
                                  for r in results]),
                         ("cascades", [r.cascade_frame(include_covariance).assign(time_frame_id=r.time_frame_id)
                                       for r in results])):
        frames = [f for f in frames if len(f)]
        df = pd.concat(frames, ignore_index=True) if frames else pd.DataFrame()
        path = out_dir / f"{name}.csv"
        df.to_csv(path, index=False)
        logger.info("Wrote %d %s to %s", len(df), name, path)


def main(argv: Optional[List[str]] = None) -> int:
    r"""
    End-to-end run: **config → negotiate cuts → load time frames → build → write**.

    Returns
    -------
    int
        ``0`` on success, ``1`` on configuration or conditions errors.
    """
    args = build_parser().parse_args(argv)
    setup_logging(args.verbose)

    try:
        config = load_config(Path(args.config) if args.config else None)
        cuts = negotiate_cuts(config)
        solver_config = SolverConfig.from_mapping(config.get("solver"))
        source = StaticConditionsSource.from_mapping(config.get("conditions"))
    except StrangenessRecoError as e:
        logger.error("%s", e)
        return 1

    provider = RunContextProvider(source, bz_override=args.bz, use_material=cuts.use_material_correction)
    sink = JsonLinesMetricsSink(args.metrics_out) if args.metrics_out else LoggingMetricsSink()

    def factory() -> TimeFrameBuilder:
        return TimeFrameBuilder(cuts, solver_config, provider, sink, build_cascades=args.cascades)

    time_frames = [load_time_frame(d) for d in args.input]
    logger.info("Processing %d time frame(s) with %d worker(s)", len(time_frames), args.workers)

    try:
        with prof(args.profile, sort="cumtime", out_path=args.profile_out, logger=logger):
            if args.workers > 1:
                results = ParallelTimeFrameBuilder(factory, args.workers).process(time_frames)
            else:
                builder = factory()
                results = [builder.process(tf) for tf in time_frames]
    except StrangenessRecoError as e:
        logger.error("%s", e)
        return 1

    metrics = [m for r in results for m in (r.v0_metrics, r.cascade_metrics) if m is not None]
    summary = summarize(metrics)
    if not summary.empty:
        logger.info("Summary over %d time frame(s):\n%s", len(results), summary.to_string())
    logger.info("Accepted %d V0s and %d cascades",
                sum(len(r.v0s) for r in results), sum(len(r.cascades) for r in results))

    if args.output:
        write_outputs(results, Path(args.output), cuts.covariance_enabled)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
