from __future__ import annotations

import logging
from typing import Dict, Generic, Iterable, Iterator, List, Optional, TypeVar

from calo_reco.errors import AssociationError, CollectionUnavailableError
from calo_reco.objects import Cluster, Track

logger = logging.getLogger(__name__)

__all__ = ["TrackManager", "ClusterManager", "EventStore", "INPUT_LIST"]

INPUT_LIST = "Input"

_T = TypeVar("_T", Track, Cluster)


class _ObjectPool(Generic[_T]):
    r"""
    Arena of event objects addressed by stable integer handles, with named
    lists and a *current* list.

    Every object added to the pool joins the ``"Input"`` list, which is the
    current list until :meth:`set_current_list` selects another one.
    """

    __slots__ = ("_objects", "_lists", "_current")

    kind = "object"

    def __init__(self) -> None:
        self._objects: Dict[int, _T] = {}
        self._lists: Dict[str, List[int]] = {INPUT_LIST: []}
        self._current: Optional[str] = INPUT_LIST

    def _add(self, obj: _T) -> int:
        handle = int(obj.id)
        if handle in self._objects:
            raise ValueError(f"Duplicate {self.kind} id {handle}.")
        self._objects[handle] = obj
        self._lists[INPUT_LIST].append(handle)
        return handle

    def get(self, handle: int) -> _T:
        r"""
        Resolve a handle.

        Raises
        ------
        KeyError
            If no object with this handle exists in the pool.
        """
        try:
            return self._objects[int(handle)]
        except KeyError:
            raise KeyError(f"Unknown {self.kind} id {handle}.") from None

    def __contains__(self, handle: object) -> bool:
        return handle in self._objects

    def __len__(self) -> int:
        return len(self._objects)

    def __iter__(self) -> Iterator[_T]:
        return iter(self._objects.values())

    def create_list(self, name: str, handles: Iterable[int]) -> None:
        """Register a named list of distinct existing handles (order preserved)."""
        ids = [int(h) for h in handles]
        missing = [h for h in ids if h not in self._objects]
        if missing:
            raise KeyError(f"Unknown {self.kind} ids in list '{name}': {missing}")
        if len(set(ids)) != len(ids):
            repeated = sorted({h for h in ids if ids.count(h) > 1})
            raise ValueError(f"Repeated {self.kind} ids in list '{name}': {repeated}")
        self._lists[str(name)] = ids

    def set_current_list(self, name: Optional[str]) -> None:
        """Select the current list; ``None`` leaves the pool without one."""
        if name is not None and name not in self._lists:
            raise KeyError(f"No {self.kind} list named '{name}'.")
        self._current = name

    @property
    def current_list_name(self) -> Optional[str]:
        return self._current

    @property
    def list_names(self) -> List[str]:
        return sorted(self._lists)

    def get_current_list(self) -> List[_T]:
        r"""
        Objects of the current list, in list order.

        Raises
        ------
        CollectionUnavailableError
            If no current list is selected.
        """
        if self._current is None or self._current not in self._lists:
            raise CollectionUnavailableError(f"No current {self.kind} list is available.")
        return [self._objects[h] for h in self._lists[self._current]]


class TrackManager(_ObjectPool[Track]):
    """Owns the tracks of one event and their parent/daughter/sibling links."""

    __slots__ = ()

    kind = "track"

    def add_track(self, track: Track) -> int:
        return self._add(track)

    def add_parent_daughter(self, parent_id: int, daughter_id: int) -> None:
        r"""
        Link a parent track to a daughter track (both directions, idempotent).

        Raises
        ------
        KeyError
            If either handle is unknown.
        ValueError
            If a track is linked to itself.
        """
        if int(parent_id) == int(daughter_id):
            raise ValueError(f"Track {parent_id} cannot be its own daughter.")
        parent, daughter = self.get(parent_id), self.get(daughter_id)
        if daughter.id not in parent.daughter_ids:
            parent.daughter_ids.append(daughter.id)
        if parent.id not in daughter.parent_ids:
            daughter.parent_ids.append(parent.id)

    def add_siblings(self, first_id: int, second_id: int) -> None:
        """Link two sibling tracks (both directions, idempotent)."""
        if int(first_id) == int(second_id):
            raise ValueError(f"Track {first_id} cannot be its own sibling.")
        first, second = self.get(first_id), self.get(second_id)
        if second.id not in first.sibling_ids:
            first.sibling_ids.append(second.id)
        if first.id not in second.sibling_ids:
            second.sibling_ids.append(first.id)


class ClusterManager(_ObjectPool[Cluster]):
    """Owns the clusters of one event."""

    __slots__ = ()

    kind = "cluster"

    def add_cluster(self, cluster: Cluster) -> int:
        return self._add(cluster)


class EventStore:
    r"""
    Track and cluster pools of a single event, plus the association API.

    :meth:`add_track_cluster_association` is the only mutator of association
    state used by the recovery algorithm. It keeps the bidirectional invariant

    .. math::

        \texttt{track.associated\_cluster} = C
        \;\Longrightarrow\;
        \texttt{track.id} \in \texttt{cluster}(C)\texttt{.associated\_tracks}

    and validates everything before mutating, so a failed call leaves both
    objects untouched.

    Attributes
    ----------
    event_id : int
        Event number (informational).
    tracks : TrackManager
    clusters : ClusterManager
    """

    __slots__ = ("event_id", "tracks", "clusters")

    def __init__(self, event_id: int = 0) -> None:
        self.event_id = int(event_id)
        self.tracks = TrackManager()
        self.clusters = ClusterManager()

    def get_current_track_list(self) -> List[Track]:
        return self.tracks.get_current_list()

    def get_current_cluster_list(self) -> List[Cluster]:
        return self.clusters.get_current_list()

    def add_track_cluster_association(self, track_id: int, cluster_id: int) -> bool:
        r"""
        Associate a track with a cluster.

        Returns
        -------
        bool
            ``True`` once the link is established.

        Raises
        ------
        AssociationError
            If a handle is unknown, the track already has a cluster, or the
            track is already listed by the cluster.
        """
        if track_id not in self.tracks:
            raise AssociationError(f"Cannot associate unknown track {track_id}.")
        if cluster_id not in self.clusters:
            raise AssociationError(f"Cannot associate unknown cluster {cluster_id}.")
        track = self.tracks.get(track_id)
        cluster = self.clusters.get(cluster_id)
        if track.associated_cluster is not None:
            raise AssociationError(
                f"Track {track.id} is already associated with cluster {track.associated_cluster}.")
        if track.id in cluster.associated_tracks:
            raise AssociationError(f"Cluster {cluster.id} already lists track {track.id}.")

        track.associated_cluster = cluster.id
        cluster.associated_tracks.append(track.id)
        logger.debug("Associated track %d with cluster %d", track.id, cluster.id)
        return True

    def remove_track_cluster_association(self, track_id: int, cluster_id: int) -> bool:
        r"""
        Undo a track-cluster association.

        Returns
        -------
        bool
            ``True`` if the link existed and was removed, ``False`` otherwise.
        """
        if track_id not in self.tracks or cluster_id not in self.clusters:
            return False
        track = self.tracks.get(track_id)
        cluster = self.clusters.get(cluster_id)
        if track.associated_cluster != cluster.id:
            return False
        track.associated_cluster = None
        if track.id in cluster.associated_tracks:
            cluster.associated_tracks.remove(track.id)
        return True

    def reset_associations(self) -> int:
        """Drop every track-cluster link; returns the number of tracks released."""
        released = 0
        for track in self.tracks:
            if track.associated_cluster is not None:
                track.associated_cluster = None
                released += 1
        for cluster in self.clusters:
            cluster.associated_tracks.clear()
        return released

    def get_statistics(self) -> Dict[str, float | int]:
        r"""
        Event-level association bookkeeping.

        Returns
        -------
        dict
            ``n_tracks``, ``n_clusters``, ``associated_tracks``,
            ``associated_clusters``, ``photon_clusters``, ``association_ratio``
            (associated tracks / tracks, ``0.0`` without tracks).
        """
        n_tracks = len(self.tracks)
        associated_tracks = sum(1 for t in self.tracks if t.has_associated_cluster)
        return {
            "n_tracks": n_tracks,
            "n_clusters": len(self.clusters),
            "associated_tracks": associated_tracks,
            "associated_clusters": sum(1 for c in self.clusters if c.associated_tracks),
            "photon_clusters": sum(1 for c in self.clusters if c.is_photon),
            "association_ratio": (associated_tracks / n_tracks) if n_tracks else 0.0,
        }
