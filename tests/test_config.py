import sys
from pathlib import Path

import orjson
import pytest

# Ensure project root on path when tests are run from an installed wheel.
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from calo_reco.algorithm import TrackRecoveryHelixAlgorithm
from calo_reco.config import TrackRecoveryHelixConfig, load_config
from calo_reco.errors import ConfigurationError


def test_defaults():
    cfg = TrackRecoveryHelixConfig()
    assert cfg.max_track_cluster_delta_z == 250.0
    assert cfg.max_absolute_track_cluster_chi == 2.5
    assert cfg.max_layers_crossed == 50
    assert cfg.max_search_layer_for_distance == 20
    assert cfg.parallel_distance_cut == 100.0
    assert cfg.helix_comparison_layer_window == 20
    assert cfg.helix_comparison_max_occupied_layers == 9
    assert cfg.max_track_cluster_distance == 100.0
    assert cfg.max_closest_helix_cluster_distance == 100.0
    assert cfg.max_mean_helix_cluster_distance == 150.0


def test_from_mapping_accepts_all_spellings():
    cfg = TrackRecoveryHelixConfig.from_mapping({
        "max_track_cluster_delta_z": 100,
        "maxLayersCrossed": "30",
        "MaxSearchLayer": 15,
        "HelixComparisonNLayers": 10,
    })
    assert cfg.max_track_cluster_delta_z == 100.0
    assert cfg.max_layers_crossed == 30 and isinstance(cfg.max_layers_crossed, int)
    assert cfg.max_search_layer_for_distance == 15
    assert cfg.helix_comparison_layer_window == 10
    assert cfg.max_mean_helix_cluster_distance == 150.0
    assert TrackRecoveryHelixConfig.from_mapping(None) == TrackRecoveryHelixConfig()


@pytest.mark.parametrize("mapping", [
    {"not_a_setting": 1.0},
    {"max_layers_crossed": -1},
    {"maxLayersCrossed": 3, "MaxLayersCrossed": 4},
    {"parallel_distance_cut": "far"},
    {"max_layers_crossed": 50.9},
    {"HelixComparisonNLayers": "20.5"},
])
def test_from_mapping_rejects_bad_settings(mapping):
    with pytest.raises(ConfigurationError):
        TrackRecoveryHelixConfig.from_mapping(mapping)


def test_integer_settings_accept_integral_floats():
    cfg = TrackRecoveryHelixConfig.from_mapping({"max_layers_crossed": 50.0, "MaxSearchLayer": "12.0"})
    assert cfg.max_layers_crossed == 50 and isinstance(cfg.max_layers_crossed, int)
    assert cfg.max_search_layer_for_distance == 12


def test_configuration_error_is_a_value_error():
    with pytest.raises(ValueError):
        TrackRecoveryHelixConfig(max_track_cluster_distance=-5.0)


def test_load_config_roundtrip(tmp_path):
    path = tmp_path / "config.json"
    path.write_bytes(orjson.dumps({"track_recovery_helix": {"max_layers_crossed": 12}}))
    cfg = load_config(path)
    assert TrackRecoveryHelixConfig.from_mapping(cfg["track_recovery_helix"]).max_layers_crossed == 12


def test_load_config_errors(tmp_path):
    with pytest.raises(ConfigurationError):
        load_config(tmp_path / "missing.json")
    bad = tmp_path / "bad.json"
    bad.write_text("{not json")
    with pytest.raises(ConfigurationError):
        load_config(bad)
    arr = tmp_path / "list.json"
    arr.write_text("[1, 2]")
    with pytest.raises(ConfigurationError):
        load_config(arr)


def test_algorithm_from_settings():
    algo = TrackRecoveryHelixAlgorithm.from_settings({
        "track_recovery_helix": {"MaxTrackClusterDistance": 50},
        "geometry": {"b_field": 4.0},
        "predicates": {"hadronic_energy_resolution": 0.5, "n_sampling_points": 50},
    })
    assert algo.config.max_track_cluster_distance == 50.0
    assert algo.predicates.geometry.b_field == 4.0
    assert algo.predicates.hadronic_energy_resolution == 0.5
    assert algo.predicates.n_sampling_points == 50

    with pytest.raises(ConfigurationError):
        TrackRecoveryHelixAlgorithm.from_settings({"predicates": {"resolution": 0.5}})


def test_shipped_config_matches_defaults():
    cfg = load_config(ROOT / "config.json")
    assert TrackRecoveryHelixConfig.from_mapping(cfg["track_recovery_helix"]) == TrackRecoveryHelixConfig()
