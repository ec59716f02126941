import sys
from pathlib import Path

import matplotlib

matplotlib.use("Agg")

import numpy as np
import orjson
import pandas as pd

# Ensure project root on path when tests are run from an installed wheel.
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from calo_reco.association import AssociationCandidate, AssociationLedger
from calo_reco.data import build_event
from calo_reco.geometry import DetectorGeometry
from calo_reco.helix import Helix
import calo_reco.plotting as calo_plot
from calo_reco.main import _resolve_event_paths, build_parser, main
from calo_reco.plotting import plot_associations_rz, plot_ledger_graph, plot_rejection_summary


def _event_record(event_id):
    geometry = DetectorGeometry()
    helix = Helix([0.0, 0.0, 0.0], [5.0, 0.0, 0.5], charge=1, b_field=geometry.b_field)
    start = geometry.project_to_ecal(helix)
    at_ecal = Helix(start.position, start.momentum, 1, geometry.b_field)
    hits = [{"position": p.tolist(), "hadronic_energy": 0.5, "mc_particle_id": 11}
            for p in at_ecal.point_at(np.linspace(2.0, 60.0, 10))]
    return {
        "event_id": event_id,
        "tracks": [{"id": 1, "momentum_at_dca": [5.0, 0.0, 0.5], "charge": 1, "mc_particle_id": 11}],
        "clusters": [{"id": 1, "hits": hits}],
    }


def test_parser_defaults():
    args = build_parser().parse_args(["-f", "events.json"])
    assert args.n_events is None
    assert args.config == "config.json"
    assert not args.plot and not args.verbose


def test_resolve_event_paths_natural_order(tmp_path):
    for name in ("event_10.json", "event_2.json", "event_1.json", "notes.txt"):
        (tmp_path / name).write_text("{}")
    names = [p.name for p in _resolve_event_paths(str(tmp_path))]
    assert names == ["event_1.json", "event_2.json", "event_10.json"]
    names = [p.name for p in _resolve_event_paths(str(tmp_path / "event_1*.json"))]
    assert names == ["event_1.json", "event_10.json"]


def test_main_writes_associations(tmp_path):
    events = tmp_path / "events.json"
    events.write_bytes(orjson.dumps({"events": [_event_record(0), _event_record(1), _event_record(2)]}))
    out = tmp_path / "links.csv"
    main(["-f", str(events), "-n", "2", "--config", str(tmp_path / "absent.json"), "--out", str(out)])

    df = pd.read_csv(out)
    assert df["event_id"].tolist() == [0, 1]
    assert df["track_id"].tolist() == [1, 1]
    assert df["cluster_id"].tolist() == [1, 1]
    assert df["cluster_mc_particle_id"].tolist() == [11, 11]


def test_main_plot_flag_draws_cut_flow(tmp_path, monkeypatch):
    events = tmp_path / "events.json"
    events.write_bytes(orjson.dumps(_event_record(0)))
    drawn = []

    def record(rejections, show=True):
        drawn.append(dict(rejections))
        return plot_rejection_summary(rejections, show=False)

    monkeypatch.setattr(calo_plot, "plot_rejection_summary", record)
    monkeypatch.setattr(calo_plot.plt, "show", lambda *a, **k: None)
    main(["-f", str(events), "--config", str(tmp_path / "absent.json"), "--plot"])

    assert len(drawn) == 1
    assert sum(drawn[0].values()) == 0


def test_plots_render_headless():
    store = build_event(_event_record(0))
    store.add_track_cluster_association(1, 1)
    fig = plot_associations_rz(store, show=False)
    assert fig.axes[0].get_xlabel() == "z (mm)"

    ledger = AssociationLedger.from_candidates([
        AssociationCandidate(1, 1, 0.5), AssociationCandidate(2, 1, 7.0),
    ])
    fig = plot_ledger_graph(ledger, show=False)
    assert "2 tracks" in fig.axes[0].get_title()
    fig = plot_ledger_graph(AssociationLedger(), show=False)
    assert fig.axes[0].get_title() == "Empty candidate ledger"

    fig = plot_rejection_summary({"delta_z": 3, "chi": 1}, show=False)
    assert len(fig.axes[0].patches) == 2
