from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, fields
from pathlib import Path
from typing import Any, Dict, Mapping, MutableMapping, Optional

import orjson

from calo_reco.errors import ConfigurationError

logger = logging.getLogger(__name__)

__all__ = ["TrackRecoveryHelixConfig", "load_config"]

# Alternative spellings accepted by TrackRecoveryHelixConfig.from_mapping:
# camelCase option names and the PascalCase names of the XML settings.
_ALIASES: Dict[str, str] = {
    "maxTrackClusterDeltaZ": "max_track_cluster_delta_z",
    "MaxTrackClusterDeltaZ": "max_track_cluster_delta_z",
    "maxAbsoluteTrackClusterChi": "max_absolute_track_cluster_chi",
    "MaxAbsoluteTrackClusterChi": "max_absolute_track_cluster_chi",
    "maxLayersCrossed": "max_layers_crossed",
    "MaxLayersCrossed": "max_layers_crossed",
    "maxSearchLayerForDistance": "max_search_layer_for_distance",
    "MaxSearchLayer": "max_search_layer_for_distance",
    "parallelDistanceCut": "parallel_distance_cut",
    "ParallelDistanceCut": "parallel_distance_cut",
    "helixComparisonLayerWindow": "helix_comparison_layer_window",
    "HelixComparisonNLayers": "helix_comparison_layer_window",
    "helixComparisonMaxOccupiedLayers": "helix_comparison_max_occupied_layers",
    "HelixComparisonMaxOccupiedLayers": "helix_comparison_max_occupied_layers",
    "maxTrackClusterDistance": "max_track_cluster_distance",
    "MaxTrackClusterDistance": "max_track_cluster_distance",
    "maxClosestHelixClusterDistance": "max_closest_helix_cluster_distance",
    "MaxClosestHelixClusterDistance": "max_closest_helix_cluster_distance",
    "maxMeanHelixClusterDistance": "max_mean_helix_cluster_distance",
    "MaxMeanHelixClusterDistance": "max_mean_helix_cluster_distance",
}

_INT_FIELDS = frozenset({
    "max_layers_crossed",
    "max_search_layer_for_distance",
    "helix_comparison_layer_window",
    "helix_comparison_max_occupied_layers",
})


@dataclass(frozen=True)
class TrackRecoveryHelixConfig:
    r"""
    Cut values of the helix-based track recovery.

    Attributes
    ----------
    max_track_cluster_delta_z : float
        Allowed excess of :math:`|z_\text{track}|` over :math:`|z_\text{cluster}|` (mm).
    max_absolute_track_cluster_chi : float
        Bound on :math:`|\chi|` of the energy-momentum consistency.
    max_layers_crossed : int
        Bound on pseudo-layers crossed by the helix from ECal entry to the cluster.
    max_search_layer_for_distance : int
        Outermost pseudo-layer used for the direct track-cluster distance.
    parallel_distance_cut : float
        Bound on the longitudinal offset of hits along the track direction (mm).
    helix_comparison_layer_window : int
        Number of layers after the cluster's inner layer compared with the helix.
    helix_comparison_max_occupied_layers : int
        At most this many occupied layers enter the helix comparison.
    max_track_cluster_distance : float
        Accept a pair if the direct distance is within this value (mm) ...
    max_closest_helix_cluster_distance : float
        ... or if the closest helix-hit distance is within this value (mm)
    max_mean_helix_cluster_distance : float
        ... and the mean helix-hit distance is within this value (mm).
    """
    max_track_cluster_delta_z: float = 250.0
    max_absolute_track_cluster_chi: float = 2.5
    max_layers_crossed: int = 50
    max_search_layer_for_distance: int = 20
    parallel_distance_cut: float = 100.0
    helix_comparison_layer_window: int = 20
    helix_comparison_max_occupied_layers: int = 9
    max_track_cluster_distance: float = 100.0
    max_closest_helix_cluster_distance: float = 100.0
    max_mean_helix_cluster_distance: float = 150.0

    def __post_init__(self) -> None:
        negative = [f.name for f in fields(self) if getattr(self, f.name) < 0]
        if negative:
            raise ConfigurationError(f"Settings must be non-negative: {', '.join(negative)}")

    @classmethod
    def from_mapping(cls, mapping: Optional[Mapping[str, Any]]) -> "TrackRecoveryHelixConfig":
        r"""
        Build a config from a settings mapping.

        Keys may be snake_case field names, camelCase option names
        (``maxTrackClusterDeltaZ``) or the XML setting names
        (``MaxTrackClusterDeltaZ``, ``MaxSearchLayer``, ``HelixComparisonNLayers``).
        Missing keys keep their defaults.

        Raises
        ------
        ConfigurationError
            On unknown keys, duplicate spellings of one setting, non-numeric or
            negative values, and fractional values for integer settings.
        """
        known = {f.name for f in fields(cls)}
        kwargs: Dict[str, Any] = {}
        unknown = []
        for key, value in dict(mapping or {}).items():
            name = key if key in known else _ALIASES.get(key)
            if name is None:
                unknown.append(key)
                continue
            if name in kwargs:
                raise ConfigurationError(f"Setting '{name}' given more than once (as '{key}').")
            try:
                number = float(value)
            except (TypeError, ValueError) as e:
                raise ConfigurationError(f"Invalid value for '{key}': {value!r}") from e
            if name in _INT_FIELDS:
                if not number.is_integer():
                    raise ConfigurationError(f"Setting '{key}' must be an integer, got {value!r}")
                number = int(number)
            kwargs[name] = number
        if unknown:
            raise ConfigurationError(f"Unknown track recovery settings: {', '.join(sorted(unknown))}")
        return cls(**kwargs)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def load_config(config_path: Path | str) -> MutableMapping[str, Any]:
    r"""
    Load a JSON configuration file with :mod:`orjson`.

    Recognized top-level blocks are ``"track_recovery_helix"``,
    ``"geometry"`` and ``"predicates"``; a missing file section simply keeps
    defaults downstream.

    Raises
    ------
    ConfigurationError
        If the file cannot be read or parsed, or is not a JSON object.
    """
    path = Path(config_path)
    try:
        cfg = orjson.loads(path.read_bytes())
    except (OSError, orjson.JSONDecodeError) as e:
        raise ConfigurationError(f"Failed to parse {path}: {e}") from e
    if not isinstance(cfg, dict):
        raise ConfigurationError(f"{path} must contain a JSON object, got {type(cfg).__name__}.")
    logger.debug("Loaded config blocks from %s: %s", path, ", ".join(cfg))
    return cfg
