import sys
from pathlib import Path
from typing import NamedTuple

import networkx as nx
import numpy as np
import pytest

# Ensure project root on path when tests are run from an installed wheel.
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from calo_reco.algorithm import TrackRecoveryHelixAlgorithm
from calo_reco.association import (
    AssociationCandidate,
    AssociationLedger,
    CandidateGenerator,
    GreedyResolver,
    generate_candidates,
    resolve,
)
from calo_reco.errors import AssociationError, CollectionUnavailableError, NotComputableError
from calo_reco.managers import EventStore
from calo_reco.objects import CaloHit, Cluster, Track, TrackState


class FakeHelix(NamedTuple):
    track_id: int


class StubPredicates:
    """Predicates returning canned values keyed by (track id, cluster id)."""

    def __init__(self, chi=0.0, layers=0, track_distance=None, helix_distance=None):
        self.chi = chi
        self.layers = layers
        self.track_distance = track_distance or {}
        self.helix_distance = helix_distance or {}
        self.calls = []

    def track_cluster_chi(self, cluster_energy, track_energy):
        if self.chi is None:
            raise NotComputableError("no chi")
        return self.chi

    def n_layers_crossed(self, helix, z_start, z_end):
        if self.layers is None:
            raise NotComputableError("no layers")
        return self.layers

    def track_cluster_distance(self, track, cluster, max_search_layer, parallel_distance_cut):
        self.calls.append(("track", track.id, cluster.id))
        value = self.track_distance.get((track.id, cluster.id))
        if value is None:
            raise NotComputableError("no track-cluster distance")
        return value

    def cluster_helix_distance(self, cluster, helix, start_layer, end_layer, max_occupied_layers):
        self.calls.append(("helix", helix.track_id, cluster.id, start_layer, end_layer, max_occupied_layers))
        value = self.helix_distance.get((helix.track_id, cluster.id))
        if value is None:
            raise NotComputableError("no helix distance")
        return value


def make_track(tid, z=100.0, energy=10.0, reaches_ecal=True):
    p = np.array([1.0, 0.0, 0.0])
    return Track(id=tid, momentum_at_dca=p, energy_at_dca=energy, charge_sign=1,
                 state_at_ecal=TrackState(np.array([1808.0, 0.0, z]), p),
                 reaches_ecal=reaches_ecal, helix_fit_at_ecal=FakeHelix(tid))


def make_cluster(cid, z=120.0, inner_layer=3, energy=10.0, is_photon=False, n_hits=1):
    c = Cluster(id=cid, is_photon=is_photon)
    for i in range(n_hits):
        c.add_hit(CaloHit(id=100 * cid + i, position=np.array([1850.0, 0.0, z]),
                          pseudo_layer=inner_layer + i, hadronic_energy=energy / n_hits))
    return c


def make_store(tracks, clusters):
    store = EventStore()
    for t in tracks:
        store.tracks.add_track(t)
    for c in clusters:
        store.clusters.add_cluster(c)
    return store


# --------------------------------------------------------------------------- generator


def test_nominal_pair_is_committed_with_min_distance_score():
    pred = StubPredicates(chi=1.0, layers=10,
                          track_distance={(1, 7): 40.0}, helix_distance={(1, 7): (60.0, 80.0)})
    store = make_store([make_track(1, z=100.0)], [make_cluster(7, z=120.0)])

    result = TrackRecoveryHelixAlgorithm(predicates=pred).run(store)

    assert result.n_candidates == 1
    assert result.n_commits == 1
    cand = result.commits[0]
    assert (cand.track_id, cand.cluster_id, cand.score) == (1, 7, 40.0)
    assert cand.closest_helix_distance == 60.0 and cand.mean_helix_distance == 80.0
    assert store.tracks.get(1).associated_cluster == 7
    assert store.clusters.get(7).associated_tracks == [1]


def test_helix_window_starts_at_cluster_inner_layer():
    pred = StubPredicates(track_distance={(1, 7): 10.0}, helix_distance={(1, 7): (1.0, 1.0)})
    generate_candidates([make_track(1)], [make_cluster(7, inner_layer=4, n_hits=3)], predicates=pred)
    helix_calls = [c for c in pred.calls if c[0] == "helix"]
    assert helix_calls == [("helix", 1, 7, 4, 24, 9)]


@pytest.mark.parametrize("z_track, z_cluster, passes", [
    (50.0, -30.0, False),       # opposite sides of z = 0
    (-50.0, 30.0, False),
    (400.0, 100.0, False),      # 400 > 100 + 250
    (340.0, 100.0, True),
    (-340.0, -100.0, True),
    (0.0, -100.0, True),
])
def test_longitudinal_cut(z_track, z_cluster, passes):
    pred = StubPredicates(track_distance={(1, 7): 10.0})
    gen = CandidateGenerator(predicates=pred)
    ledger = gen.generate([make_track(1, z=z_track)], [make_cluster(7, z=z_cluster)])
    assert (1 in ledger) is passes
    if not passes:
        assert gen.rejections["delta_z"] == 1
        assert pred.calls == []


@pytest.mark.parametrize("chi, passes", [(2.5, True), (-2.5, True), (2.6, False), (-3.0, False), (None, False)])
def test_chi_cut(chi, passes):
    pred = StubPredicates(chi=chi, track_distance={(1, 7): 10.0})
    gen = CandidateGenerator(predicates=pred)
    ledger = gen.generate([make_track(1)], [make_cluster(7)])
    assert (len(ledger) == 1) is passes
    assert gen.rejections["chi"] == (0 if passes else 1)


@pytest.mark.parametrize("layers, passes", [(50, True), (51, False), (None, False)])
def test_layers_crossed_cut(layers, passes):
    pred = StubPredicates(layers=layers, track_distance={(1, 7): 10.0})
    gen = CandidateGenerator(predicates=pred)
    ledger = gen.generate([make_track(1)], [make_cluster(7)])
    assert (len(ledger) == 1) is passes
    assert gen.rejections["layers_crossed"] == (0 if passes else 1)


@pytest.mark.parametrize("track_distance, helix_distance, expected_score", [
    (100.0, None, 100.0),              # direct distance alone
    (150.0, (90.0, 140.0), 90.0),      # helix criteria alone
    (150.0, (90.0, 160.0), None),      # mean too large, direct too large
    (150.0, (110.0, 100.0), None),     # closest too large
    (None, (50.0, 60.0), 50.0),        # direct not computable
    (80.0, None, 80.0),                # helix not computable
    (None, None, None),                # nothing computable
    (30.0, (20.0, 25.0), 20.0),        # score is the smaller distance
])
def test_proximity_cut_and_score(track_distance, helix_distance, expected_score):
    td = {} if track_distance is None else {(1, 7): track_distance}
    hd = {} if helix_distance is None else {(1, 7): helix_distance}
    gen = CandidateGenerator(predicates=StubPredicates(track_distance=td, helix_distance=hd))
    ledger = gen.generate([make_track(1)], [make_cluster(7)])
    if expected_score is None:
        assert len(ledger) == 0
        assert gen.rejections["proximity"] == 1
    else:
        assert [c.score for c in ledger.candidates(1)] == [expected_score]


def test_eligibility_filters():
    assoc = make_track(1)
    assoc.associated_cluster = 99
    no_ecal = make_track(2, reaches_ecal=False)
    parent = make_track(3)
    parent.daughter_ids.append(4)
    good = make_track(4)

    photon = make_cluster(10, is_photon=True)
    taken = make_cluster(11)
    taken.associated_tracks.append(42)
    empty = Cluster(id=12)
    fine = make_cluster(13)

    dist = {(t, c): 5.0 for t in range(1, 5) for c in range(10, 14)}
    gen = CandidateGenerator(predicates=StubPredicates(track_distance=dist))
    ledger = gen.generate([assoc, no_ecal, parent, good], [photon, taken, empty, fine])

    assert gen.n_eligible_tracks == 1
    assert gen.n_eligible_clusters == 1
    assert list(ledger) == [4]
    assert [c.cluster_id for c in ledger.candidates(4)] == [13]


def test_ledger_is_normalized_independently_of_input_order():
    dist = {(1, 7): 30.0, (1, 8): 10.0, (1, 9): 10.0, (2, 7): 5.0}
    pred = StubPredicates(track_distance=dist)
    tracks = [make_track(2), make_track(1)]
    clusters = [make_cluster(9), make_cluster(7), make_cluster(8)]
    ledger = generate_candidates(tracks, clusters, predicates=pred)
    assert list(ledger) == [1, 2]
    assert [c.cluster_id for c in ledger.candidates(1)] == [8, 9, 7]
    assert ledger.n_candidates == 4

    reversed_ledger = generate_candidates(tracks[::-1], clusters[::-1], predicates=pred)
    assert reversed_ledger.to_frame().equals(ledger.to_frame())


def test_repeated_objects_in_input_lists_are_evaluated_once():
    pred = StubPredicates(track_distance={(1, 7): 10.0})
    track, cluster = make_track(1), make_cluster(7)
    gen = CandidateGenerator(predicates=pred)
    ledger = gen.generate([track, track], [cluster, cluster])
    assert ledger.n_candidates == 1
    assert (gen.n_eligible_tracks, gen.n_eligible_clusters) == (1, 1)
    assert [c.cluster_id for c in ledger.candidates(1)] == [7]


def test_ledger_rejects_duplicate_pairs_and_exports():
    ledger = AssociationLedger()
    ledger.add(AssociationCandidate(1, 7, 3.0, 3.0))
    ledger.add(AssociationCandidate(2, 7, 4.0, 4.0))
    with pytest.raises(ValueError):
        ledger.add(AssociationCandidate(1, 7, 1.0))

    frame = ledger.to_frame()
    assert list(frame.columns) == ["track_id", "cluster_id", "score", "track_cluster_distance",
                                   "closest_helix_distance", "mean_helix_distance"]
    assert frame["score"].tolist() == [3.0, 4.0]

    G = ledger.to_graph()
    assert nx.is_bipartite(G)
    assert G.number_of_edges() == 2
    assert G.edges[("track", 2), ("cluster", 7)]["score"] == 4.0
    assert G.degree[("cluster", 7)] == 2


# --------------------------------------------------------------------------- resolver


def _ledger(*triples):
    return AssociationLedger.from_candidates(AssociationCandidate(t, c, s) for t, c, s in triples)


def test_two_tracks_share_a_cluster():
    # A (1) -> X (10) at 10, B (2) -> X (10) at 5
    ledger = _ledger((1, 10, 10.0), (2, 10, 5.0))
    calls = []
    n = resolve(ledger, lambda t, c: calls.append((t, c)) or True)
    assert n == 2
    assert calls == [(2, 10), (1, 10)]
    assert len(ledger) == 0


def test_committed_track_loses_other_candidates():
    ledger = _ledger((1, 10, 1.0), (1, 11, 2.0), (2, 11, 3.0))
    calls = []
    resolve(ledger, lambda t, c: calls.append((t, c)))
    assert calls == [(1, 10), (2, 11)]


def test_ties_broken_by_track_then_cluster_id():
    ledger = _ledger((3, 7, 5.0), (2, 9, 5.0), (2, 8, 5.0), (1, 4, 6.0))
    calls = []
    resolver = GreedyResolver()
    resolver.resolve(ledger, lambda t, c: calls.append((t, c)))
    assert calls == [(2, 8), (3, 7), (1, 4)]
    assert [c.score for c in resolver.commits] == [5.0, 5.0, 6.0]


def test_each_commit_is_the_global_minimum_and_ledger_shrinks():
    rng = np.random.default_rng(1234)
    triples = []
    for t in range(1, 21):
        for c in rng.choice(np.arange(100, 108), size=4, replace=False):
            triples.append((t, int(c), float(rng.integers(0, 15))))
    ledger = _ledger(*triples)

    # reference: rescan all remaining candidates every step
    remaining = {}
    for t, c, s in triples:
        remaining.setdefault(t, []).append((s, t, c))
    expected = []
    while remaining:
        s, t, c = min(x for entry in remaining.values() for x in entry)
        expected.append((t, c))
        del remaining[t]

    sizes, calls = [], []

    def committer(t, c):
        sizes.append(len(ledger))
        calls.append((t, c))
        return True

    assert resolve(ledger, committer) == 20
    assert calls == expected
    assert sizes == list(range(20, 0, -1))
    assert len({t for t, _ in calls}) == 20


def test_commit_failure_aborts_the_pass():
    ledger = _ledger((1, 10, 1.0), (2, 11, 2.0), (3, 12, 3.0))
    calls = []

    def committer(t, c):
        calls.append((t, c))
        if t == 2:
            raise AssociationError("refused")
        return True

    resolver = GreedyResolver()
    with pytest.raises(AssociationError):
        resolver.resolve(ledger, committer)
    assert calls == [(1, 10), (2, 11)]
    assert [c.track_id for c in resolver.commits] == [1]


def test_committer_returning_false_is_a_failure():
    ledger = _ledger((1, 10, 1.0), (2, 11, 2.0))
    calls = []
    with pytest.raises(AssociationError):
        resolve(ledger, lambda t, c: calls.append((t, c)) or False)
    assert calls == [(1, 10)]


def test_empty_ledger_resolves_to_nothing():
    assert resolve(AssociationLedger(), lambda t, c: pytest.fail("no commit expected")) == 0


# --------------------------------------------------------------------------- end to end with stubs


def test_pass_is_idempotent_and_respects_existing_links():
    pred = StubPredicates(track_distance={(t, c): float(t + c) for t in (1, 2, 3) for c in (7, 8)})
    tracks = [make_track(1), make_track(2), make_track(3)]
    store = make_store(tracks, [make_cluster(7), make_cluster(8), make_cluster(9)])
    store.add_track_cluster_association(3, 9)
    algo = TrackRecoveryHelixAlgorithm(predicates=pred)

    first = algo.run(store)
    assert first.n_commits == 2
    assert store.tracks.get(3).associated_cluster == 9
    assert store.tracks.get(1).associated_cluster == 7
    assert store.tracks.get(2).associated_cluster == 7
    assert store.clusters.get(7).associated_tracks == [1, 2]

    second = algo.run(store)
    assert second.n_candidates == 0
    assert second.n_commits == 0


def test_result_rebuilds_ledger_for_diagnostics():
    pred = StubPredicates(track_distance={(1, 7): 12.0, (1, 8): 20.0})
    store = make_store([make_track(1)], [make_cluster(7), make_cluster(8)])
    result = TrackRecoveryHelixAlgorithm(predicates=pred).run(store)
    ledger = result.ledger()
    assert ledger.n_candidates == 2
    assert [c.cluster_id for c in ledger.candidates(1)] == [7, 8]
    assert result.n_candidate_tracks == 1


def test_unavailable_lists_raise_before_any_work():
    pred = StubPredicates(track_distance={(1, 7): 12.0})
    store = make_store([make_track(1)], [make_cluster(7)])
    store.tracks.set_current_list(None)
    with pytest.raises(CollectionUnavailableError):
        TrackRecoveryHelixAlgorithm(predicates=pred).run(store)
    assert pred.calls == []
    assert store.tracks.get(1).associated_cluster is None
