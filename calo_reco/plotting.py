from typing import Mapping, Optional

import matplotlib.pyplot as plt
import networkx as nx
import numpy as np

from calo_reco.association import AssociationLedger
from calo_reco.geometry import DetectorGeometry
from calo_reco.managers import EventStore


def _show_and_close(fig, *, do_show: bool = True) -> None:
    r"""
    Show a Matplotlib figure (optionally) and always close it, so batch runs
    over many events do not accumulate open figures.
    """
    fig.tight_layout()
    if do_show:
        plt.show()
    plt.close(fig)


def plot_associations_rz(store: EventStore, geometry: Optional[DetectorGeometry] = None,
                         show: bool = True, helix_length: float = 400.0):
    r"""
    Draw clusters, tracks and their links in the :math:`(z, r)` plane.

    Each cluster's hits are scattered in their own color (photon clusters in
    grey). Every track is drawn as its helix from the ECal state over
    ``helix_length`` mm of transverse arc; associated tracks are solid and
    joined to the centroid of their cluster's innermost layer by a dashed
    line, unassociated tracks are dotted. The ECal front face
    (:math:`r = R_b`, :math:`|z| = Z_e`) is outlined.

    Returns
    -------
    matplotlib.figure.Figure
    """
    geometry = geometry or DetectorGeometry()
    fig, ax = plt.subplots(figsize=(12, 8))

    clusters = list(store.clusters)
    cmap = plt.get_cmap("tab20")
    for i, cluster in enumerate(clusters):
        if cluster.n_calo_hits == 0:
            continue
        pos, _ = cluster.hit_arrays()
        r = np.hypot(pos[:, 0], pos[:, 1])
        color = "0.6" if cluster.is_photon else cmap(i % cmap.N)
        ax.scatter(pos[:, 2], r, s=8, color=color, alpha=0.8, label=f"cluster {cluster.id}")

    for track in store.tracks:
        start = track.state_at_ecal.position
        style = "-" if track.has_associated_cluster else ":"
        if track.helix_fit_at_ecal is not None:
            path = track.helix_fit_at_ecal.point_at(np.linspace(0.0, helix_length, 64))
            ax.plot(path[:, 2], np.hypot(path[:, 0], path[:, 1]), style, color="k", linewidth=1.0)
        ax.plot(start[2], np.hypot(start[0], start[1]), "k^", markersize=5)
        if track.has_associated_cluster:
            cluster = store.clusters.get(track.associated_cluster)
            c = cluster.centroid(cluster.inner_pseudo_layer)
            ax.plot([start[2], c[2]], [np.hypot(start[0], start[1]), np.hypot(c[0], c[1])],
                    "--", color="tab:red", linewidth=0.9)

    rb, ze = geometry.ecal_barrel_inner_radius, geometry.ecal_endcap_inner_z
    ax.plot([-ze, -ze, ze, ze], [0.0, rb, rb, 0.0], color="tab:blue", linewidth=1.2, alpha=0.6)

    ax.set_xlabel("z (mm)")
    ax.set_ylabel("r (mm)")
    ax.set_title(f"Event {store.event_id}: track-cluster associations (r-z)")
    ax.grid(True, alpha=0.3)
    if 0 < len(clusters) <= 12:
        ax.legend(loc="best", fontsize=8)
    _show_and_close(fig, do_show=show)
    return fig


def plot_ledger_graph(ledger: AssociationLedger, show: bool = True):
    r"""
    Bipartite view of the candidate ledger: tracks on the left, clusters on
    the right, one edge per candidate labelled with its score (mm).

    Returns
    -------
    matplotlib.figure.Figure
    """
    G = ledger.to_graph()
    fig, ax = plt.subplots(figsize=(8, max(4.0, 0.5 * G.number_of_nodes())))
    if G.number_of_nodes() == 0:
        ax.set_axis_off()
        ax.set_title("Empty candidate ledger")
        _show_and_close(fig, do_show=show)
        return fig

    tracks = sorted(n for n, d in G.nodes(data=True) if d["bipartite"] == 0)
    pos = nx.bipartite_layout(G, tracks)
    colors = ["tab:orange" if n in tracks else "tab:blue" for n in G.nodes]
    labels = {n: f"{'T' if n[0] == 'track' else 'C'}{n[1]}" for n in G.nodes}
    nx.draw_networkx(G, pos, ax=ax, node_color=colors, labels=labels, node_size=500, font_size=8)
    edge_labels = {(u, v): f"{d['score']:.1f}" for u, v, d in G.edges(data=True)}
    nx.draw_networkx_edge_labels(G, pos, edge_labels=edge_labels, ax=ax, font_size=7)
    ax.set_title(f"Candidates: {ledger.n_candidates} for {len(ledger)} tracks")
    ax.set_axis_off()
    _show_and_close(fig, do_show=show)
    return fig


def plot_rejection_summary(rejections: Mapping[str, int], show: bool = True):
    """Horizontal bar chart of per-cut rejection counts."""
    names = list(rejections)
    counts = np.array([rejections[n] for n in names], dtype=np.float64)
    fig, ax = plt.subplots(figsize=(7, 0.5 * max(len(names), 1) + 1.5))
    y = np.arange(len(names))
    ax.barh(y, counts, color="tab:gray")
    ax.set_yticks(y)
    ax.set_yticklabels(names)
    ax.invert_yaxis()
    ax.set_xlabel("rejected pairs")
    ax.set_title("Cut flow")
    ax.grid(True, axis="x", alpha=0.3)
    _show_and_close(fig, do_show=show)
    return fig
