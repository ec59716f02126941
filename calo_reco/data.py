from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional

import numpy as np
import orjson
import pandas as pd

from calo_reco.errors import NotComputableError
from calo_reco.geometry import DetectorGeometry
from calo_reco.helix import Helix
from calo_reco.managers import EventStore
from calo_reco.objects import CaloHit, Cluster, Track, TrackState

logger = logging.getLogger(__name__)

__all__ = ["load_events", "build_event", "associations_frame"]


def _vec3(entry: Mapping[str, Any], key: str, default=None) -> np.ndarray:
    value = entry.get(key, default)
    if value is None:
        raise ValueError(f"Missing 3-vector '{key}' in {sorted(entry)}")
    arr = np.asarray(value, dtype=np.float64)
    if arr.shape != (3,):
        raise ValueError(f"'{key}' must have 3 components, got shape {arr.shape}")
    return arr


def _build_track(entry: Mapping[str, Any], geometry: DetectorGeometry) -> Track:
    r"""
    Build a :class:`Track` from its JSON record.

    Notes
    -----
    - ``energy_at_dca`` defaults to :math:`\sqrt{|p|^2 + m^2}`.
    - Without an explicit ``state_at_ecal`` the DCA helix is propagated to the
      ECal front face; if it never gets there the DCA state is kept and the
      track is flagged as not reaching the ECal (unless ``reaches_ecal`` is
      given explicitly).
    - The ECal helix is fitted to the ECal state; neutral or purely
      longitudinal tracks get none.
    """
    tid = int(entry["id"])
    momentum = _vec3(entry, "momentum_at_dca")
    charge = int(np.sign(entry.get("charge_sign", entry.get("charge", 0))))
    mass = float(entry.get("mass", 0.13957))
    energy = float(entry.get("energy_at_dca", np.sqrt(momentum @ momentum + mass * mass)))
    z0 = float(entry.get("z0", 0.0))
    dca = _vec3(entry, "position_at_dca", (0.0, 0.0, z0))

    projected: Optional[TrackState] = None
    if "state_at_ecal" in entry:
        st = entry["state_at_ecal"]
        projected = TrackState(position=_vec3(st, "position"), momentum=_vec3(st, "momentum"))
    else:
        try:
            projected = geometry.project_to_ecal(Helix(dca, momentum, charge, geometry.b_field))
        except NotComputableError as e:
            logger.debug("Track %d: no ECal projection (%s)", tid, e)

    reaches_ecal = bool(entry.get("reaches_ecal", projected is not None))
    state = projected if projected is not None else TrackState(position=dca, momentum=momentum)

    try:
        helix = Helix(state.position, state.momentum, charge, geometry.b_field)
    except NotComputableError:
        helix = None

    mc = entry.get("mc_particle_id")
    return Track(
        id=tid,
        momentum_at_dca=momentum,
        energy_at_dca=energy,
        charge_sign=charge,
        state_at_ecal=state,
        reaches_ecal=reaches_ecal,
        helix_fit_at_ecal=helix,
        mass=mass,
        d0=float(entry.get("d0", 0.0)),
        z0=z0,
        mc_particle_id=None if mc is None else int(mc),
    )


def _build_cluster(entry: Mapping[str, Any], geometry: DetectorGeometry, next_hit_id: int) -> Cluster:
    mc = entry.get("mc_particle_id")
    cluster = Cluster(
        id=int(entry["id"]),
        is_photon=bool(entry.get("is_photon", False)),
        mc_particle_id=None if mc is None else int(mc),
    )
    for h in entry.get("hits", ()):
        position = _vec3(h, "position")
        layer = h.get("pseudo_layer")
        hit_mc = h.get("mc_particle_id")
        cluster.add_hit(CaloHit(
            id=int(h.get("id", next_hit_id)),
            position=position,
            pseudo_layer=geometry.pseudo_layer_of(position) if layer is None else int(layer),
            hadronic_energy=float(h.get("hadronic_energy", h.get("energy", 0.0))),
            electromagnetic_energy=float(h.get("electromagnetic_energy", 0.0)),
            mc_particle_id=None if hit_mc is None else int(hit_mc),
        ))
        next_hit_id += 1
    return cluster


def build_event(record: Mapping[str, Any], geometry: Optional[DetectorGeometry] = None,
                event_id: int = 0) -> EventStore:
    r"""
    Turn one event record into a populated :class:`EventStore`.

    Parameters
    ----------
    record : mapping
        ``{"event_id", "tracks": [...], "clusters": [...]}``. Track records may
        carry ``parents``/``daughters``/``siblings`` id lists and an
        ``associated_cluster`` id from an earlier reconstruction step.
    geometry : DetectorGeometry, optional
        Used for pseudo-layers, ECal projection and the field value.
    event_id : int
        Fallback when the record has no ``event_id``.

    Raises
    ------
    ValueError
        On malformed vectors or duplicate ids.
    KeyError
        On missing ids or links to unknown tracks/clusters.
    AssociationError
        If the pre-existing associations are inconsistent.
    """
    geometry = geometry or DetectorGeometry()
    store = EventStore(int(record.get("event_id", event_id)))
    track_entries = list(record.get("tracks", ()))

    for entry in track_entries:
        store.tracks.add_track(_build_track(entry, geometry))

    for entry in track_entries:
        tid = int(entry["id"])
        for d in entry.get("daughters", ()):
            store.tracks.add_parent_daughter(tid, int(d))
        for p in entry.get("parents", ()):
            store.tracks.add_parent_daughter(int(p), tid)
        for s in entry.get("siblings", ()):
            store.tracks.add_siblings(tid, int(s))

    next_hit_id = 0
    for entry in record.get("clusters", ()):
        cluster = _build_cluster(entry, geometry, next_hit_id)
        next_hit_id += cluster.n_calo_hits
        store.clusters.add_cluster(cluster)

    for entry in track_entries:
        cid = entry.get("associated_cluster")
        if cid is not None:
            store.add_track_cluster_association(int(entry["id"]), int(cid))

    return store


def _event_records(payload: Any) -> List[Mapping[str, Any]]:
    if isinstance(payload, dict) and "events" in payload:
        records = payload["events"]
    elif isinstance(payload, dict):
        records = [payload]
    else:
        records = payload
    if not isinstance(records, list) or not all(isinstance(r, dict) for r in records):
        raise ValueError("Event file must hold an event object, a list of events or {'events': [...]}")
    return records


def load_events(path: Path | str, geometry: Optional[DetectorGeometry] = None,
                n_events: Optional[int] = None) -> List[EventStore]:
    r"""
    Load calorimeter events from a JSON file.

    The file holds either a single event object, a list of events or
    ``{"events": [...]}``. Each event has ``tracks`` and ``clusters``
    arrays; see :func:`build_event`.

    Parameters
    ----------
    path : str or Path
    geometry : DetectorGeometry, optional
    n_events : int, optional
        Read at most this many events.

    Returns
    -------
    list[EventStore]
    """
    path = Path(path)
    records = _event_records(orjson.loads(path.read_bytes()))
    if n_events is not None:
        records = records[: int(n_events)]

    stores = [build_event(rec, geometry, event_id=i) for i, rec in enumerate(records)]
    logger.info(
        "Loaded %d events from %s (%d tracks, %d clusters)",
        len(stores), path.name,
        sum(len(s.tracks) for s in stores), sum(len(s.clusters) for s in stores),
    )
    return stores


def associations_frame(stores: EventStore | Iterable[EventStore]) -> pd.DataFrame:
    r"""
    Track-cluster links as a table.

    Returns
    -------
    pandas.DataFrame
        Columns ``event_id, track_id, cluster_id, track_mc_particle_id,
        cluster_mc_particle_id``; one row per associated track, sorted by
        event and track id.
    """
    if isinstance(stores, EventStore):
        stores = [stores]
    rows: List[Dict[str, Any]] = []
    for store in stores:
        for track in store.tracks:
            if track.associated_cluster is None:
                continue
            cluster = store.clusters.get(track.associated_cluster)
            rows.append({
                "event_id": store.event_id,
                "track_id": track.id,
                "cluster_id": cluster.id,
                "track_mc_particle_id": track.mc_particle_id,
                "cluster_mc_particle_id": cluster.main_mc_particle_id,
            })
    columns = ["event_id", "track_id", "cluster_id", "track_mc_particle_id", "cluster_mc_particle_id"]
    df = pd.DataFrame(rows, columns=columns)
    return df.sort_values(["event_id", "track_id"], kind="stable").reset_index(drop=True)
