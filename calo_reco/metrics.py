from __future__ import annotations

from typing import Dict, Iterable, Mapping, Tuple

import numpy as np

from calo_reco.managers import EventStore

__all__ = ["compute_association_metrics", "summarize_metrics", "unpack"]


def compute_association_metrics(store: EventStore) -> Dict[str, float]:
    r"""
    Truth-level quality of the track-cluster associations in one event.

    A link is **correct** when the track's MC particle equals the cluster's
    dominant (energy-weighted) MC particle. Links whose track or cluster has
    no truth information are counted as *unmatched* and excluded from purity.

    Returns
    -------
    dict
        - ``'n_tracks'`` / ``'n_associated_tracks'``
        - ``'efficiency'`` : associated / all tracks
        - ``'n_correct'`` / ``'n_wrong'`` / ``'n_unmatched'``
        - ``'purity'`` : correct / (correct + wrong), ``nan`` if undefined
        - ``'n_clusters_with_tracks'``
        - ``'max_fan_in'`` : largest number of tracks on one cluster
        - ``'mean_fan_in'`` : mean tracks per associated cluster (``0.0`` if none)

    Notes
    -----
    Several tracks on one cluster are legitimate (e.g. a photon conversion
    or a hadronic interaction), so fan-in is reported rather than penalized.
    """
    n_tracks = len(store.tracks)
    n_assoc = n_correct = n_wrong = n_unmatched = 0
    for track in store.tracks:
        if track.associated_cluster is None:
            continue
        n_assoc += 1
        cluster_mc = store.clusters.get(track.associated_cluster).main_mc_particle_id
        if track.mc_particle_id is None or cluster_mc is None:
            n_unmatched += 1
        elif track.mc_particle_id == cluster_mc:
            n_correct += 1
        else:
            n_wrong += 1

    fan_in = np.array([len(c.associated_tracks) for c in store.clusters if c.associated_tracks],
                      dtype=np.int64)
    judged = n_correct + n_wrong
    return {
        "n_tracks": float(n_tracks),
        "n_associated_tracks": float(n_assoc),
        "efficiency": (n_assoc / n_tracks) if n_tracks else 0.0,
        "n_correct": float(n_correct),
        "n_wrong": float(n_wrong),
        "n_unmatched": float(n_unmatched),
        "purity": (n_correct / judged) if judged else float("nan"),
        "n_clusters_with_tracks": float(fan_in.size),
        "max_fan_in": float(fan_in.max()) if fan_in.size else 0.0,
        "mean_fan_in": float(fan_in.mean()) if fan_in.size else 0.0,
    }


def summarize_metrics(per_event: Iterable[Mapping[str, float]]) -> Dict[str, float]:
    r"""
    Pool per-event metrics: counts are summed and ratios recomputed from the
    totals (not averaged), ``max_fan_in`` is the overall maximum.
    """
    totals: Dict[str, float] = {}
    max_fan_in = 0.0
    fan_in_sum = 0.0
    for m in per_event:
        for key in ("n_tracks", "n_associated_tracks", "n_correct", "n_wrong",
                    "n_unmatched", "n_clusters_with_tracks"):
            totals[key] = totals.get(key, 0.0) + float(m[key])
        max_fan_in = max(max_fan_in, float(m["max_fan_in"]))
        fan_in_sum += float(m["mean_fan_in"]) * float(m["n_clusters_with_tracks"])

    if not totals:
        return {}
    judged = totals["n_correct"] + totals["n_wrong"]
    totals["efficiency"] = totals["n_associated_tracks"] / totals["n_tracks"] if totals["n_tracks"] else 0.0
    totals["purity"] = totals["n_correct"] / judged if judged else float("nan")
    totals["max_fan_in"] = max_fan_in
    n_cl = totals["n_clusters_with_tracks"]
    totals["mean_fan_in"] = fan_in_sum / n_cl if n_cl else 0.0
    return totals


def unpack(metrics: Mapping[str, float], *keys: str) -> Tuple[float, ...]:
    r"""
    Extract a tuple of values from a metrics dict in a specified order.

    Missing keys yield ``nan``.

    Examples
    --------
    >>> m = {"efficiency": 0.9, "purity": 0.8}
    >>> unpack(m, "efficiency", "purity", "max_fan_in")
    (0.9, 0.8, nan)
    """
    return tuple(float(metrics.get(k, np.nan)) for k in keys)
