#!/usr/bin/env python3
r"""
Helix-based track recovery runner.

Loads calorimeter events (tracks, clusters, hits) from JSON, runs
:class:`~calo_reco.algorithm.TrackRecoveryHelixAlgorithm` on each of them and
reports association statistics and truth metrics.

A track that reached the ECal but was left without a cluster is paired with the
cluster whose hits lie closest to its extrapolated helix, subject to a cascade
of longitudinal, energy-consistency (:math:`|\chi|`), layer-crossing and
proximity cuts. Choices are made globally in ascending distance order.

CLI overview
------------
See :func:`build_parser` for all options. Typical usage:

.. code-block:: bash

   calo-reco -f events.json --config config.json --out links.csv
   calo-reco -f data/ -n 20 -v --plot
"""

from __future__ import annotations

import argparse
import logging
import os
import re
from glob import glob
from pathlib import Path
from typing import List, Optional, Sequence

import calo_reco.data as calo_data
import calo_reco.metrics as calo_metrics
from calo_reco.algorithm import TrackRecoveryHelixAlgorithm
from calo_reco.config import load_config
from calo_reco.geometry import DetectorGeometry


def build_parser() -> argparse.ArgumentParser:
    r"""
    Construct the command-line interface.

    Notes
    -----
    - ``--file``: a JSON event file, a directory of ``*.json`` or a glob.
    - ``--n-events``: stop after this many events (all by default).
    - ``--config``: JSON file with ``track_recovery_helix``, ``geometry`` and
      ``predicates`` blocks; missing file means defaults.
    - ``--out``: write the final associations of all events as CSV.
    """
    p = argparse.ArgumentParser(description="Recover track-cluster associations with helix extrapolation.")
    p.add_argument(
        "-f", "--file", type=str, required=True,
        help="Input JSON event file, a directory containing *.json, or a glob (e.g. data/event_*.json).",
    )
    p.add_argument("-n", "--n-events", type=int, default=None,
                   help="Maximum number of events to process (default: all).")
    p.add_argument("--config", type=str, default="config.json",
                   help="Path to JSON config (default: config.json; defaults are used if it does not exist).")
    p.add_argument("--out", type=str, default=None,
                   help="Write associations as CSV to this path.")
    p.add_argument("--plot", action="store_true", default=False,
                   help="Show r-z association and candidate-graph plots per event.")
    p.add_argument("-v", "--verbose", action="store_true",
                   help="Enable verbose logging.")
    return p


def setup_logging(verbose: bool = False) -> None:
    r"""
    Configure process-wide logging.

    Parameters
    ----------
    verbose : bool, optional
        If ``True``, set level to ``DEBUG``; otherwise ``INFO``.

    Notes
    -----
    Format is ``'%(asctime)s | %(levelname)-8s | %(message)s'`` with ``%H:%M:%S`` timestamps.
    """
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s | %(levelname)-8s | %(message)s",
        datefmt="%H:%M:%S",
    )


def apply_plotting_guard(enable_plots: bool) -> None:
    r"""
    Force the non-interactive ``Agg`` backend when plotting is disabled.

    Must run before :mod:`matplotlib.pyplot` is imported.
    """
    if enable_plots:
        return
    os.environ.setdefault("MPLBACKEND", "Agg")
    import matplotlib
    matplotlib.use("Agg", force=True)


def _natural_key(path: Path):
    """Natural sort key (split digits) so event_2 comes before event_10."""
    parts = re.split(r"(\d+)", path.name)
    return [int(p) if p.isdigit() else p.lower() for p in parts]


def _resolve_event_paths(file_arg: str) -> List[Path]:
    """
    Turn --file into a list of .json paths.

    Supports a single file, a directory (``*.json`` inside) or a glob pattern
    with ``* ? [ ]``; matches are returned in natural order.
    """
    if any(ch in file_arg for ch in "*?[]"):
        return sorted((Path(x) for x in glob(file_arg)), key=_natural_key)
    p = Path(file_arg)
    if p.is_dir():
        return sorted(p.glob("*.json"), key=_natural_key)
    return [p]


def main(argv: Optional[Sequence[str]] = None) -> None:
    r"""
    End-to-end pipeline: **load config -> load events -> recover -> report**.

    1. Parse CLI (:func:`build_parser`) and set up logging (:func:`setup_logging`).
    2. Read the config file if present and build the algorithm with
       :meth:`TrackRecoveryHelixAlgorithm.from_settings`.
    3. For each event: run the recovery, log the store statistics and
       :func:`calo_reco.metrics.compute_association_metrics`, optionally plot.
    4. Log pooled metrics and optionally write the associations CSV.
    """
    args = build_parser().parse_args(argv)
    setup_logging(args.verbose)
    apply_plotting_guard(args.plot)

    event_paths = _resolve_event_paths(args.file)
    if not event_paths or not all(p.is_file() for p in event_paths):
        raise FileNotFoundError(f"No events found for --file={args.file}")

    cfg_path = Path(args.config)
    if cfg_path.is_file():
        logging.info("Reading config from %s", cfg_path)
        settings = load_config(cfg_path)
    else:
        logging.info("No config at %s; using defaults", cfg_path)
        settings = {}
    algorithm = TrackRecoveryHelixAlgorithm.from_settings(settings)
    geometry = DetectorGeometry.from_mapping(settings.get("geometry"))
    logging.info("Cuts: %s", algorithm.config.to_dict())

    stores = []
    per_event_metrics = []
    for ev_path in event_paths:
        remaining = None if args.n_events is None else args.n_events - len(stores)
        if remaining is not None and remaining <= 0:
            break
        for store in calo_data.load_events(ev_path, geometry=geometry, n_events=remaining):
            result = algorithm.run(store)
            stats = store.get_statistics()
            metrics = calo_metrics.compute_association_metrics(store)
            logging.info("Event %d statistics: %s", store.event_id, stats)
            logging.info(
                "Event %d: efficiency=%.3f purity=%.3f max fan-in=%d",
                store.event_id, *calo_metrics.unpack(metrics, "efficiency", "purity", "max_fan_in"),
            )
            if args.plot:
                import calo_reco.plotting as calo_plot
                calo_plot.plot_associations_rz(store, geometry=geometry)
                calo_plot.plot_ledger_graph(result.ledger())
                calo_plot.plot_rejection_summary(result.rejections)
            stores.append(store)
            per_event_metrics.append(metrics)

    if len(stores) > 1:
        pooled = calo_metrics.summarize_metrics(per_event_metrics)
        logging.info("=== Aggregate over %d events ===", len(stores))
        for k, v in pooled.items():
            logging.info("  %s: %s", k, v)

    if args.out:
        frame = calo_data.associations_frame(stores)
        frame.to_csv(args.out, index=False)
        logging.info("Wrote %d associations to %s", len(frame), args.out)


if __name__ == "__main__":
    main()
