__all__ = [
    "TrackRecoveryHelixAlgorithm", "RecoveryResult",
    "TrackRecoveryHelixConfig", "load_config",
    "AssociationCandidate", "AssociationLedger",
    "CandidateGenerator", "GreedyResolver",
    "generate_candidates", "resolve",
    "CompatibilityPredicates", "DetectorGeometry", "Helix",
    "CaloHit", "TrackState", "Track", "Cluster",
    "TrackManager", "ClusterManager", "EventStore",
    "load_events", "associations_frame",
    "compute_association_metrics",
    "CaloRecoError", "CollectionUnavailableError", "NotComputableError",
    "AssociationError", "ConfigurationError",
]

# Errors
from .errors import (
    CaloRecoError,
    CollectionUnavailableError,
    NotComputableError,
    AssociationError,
    ConfigurationError,
)

# Event model
from .helix import Helix
from .objects import CaloHit, TrackState, Track, Cluster
from .managers import TrackManager, ClusterManager, EventStore

# Geometry & predicates
from .geometry import DetectorGeometry
from .helpers import CompatibilityPredicates

# Association engine
from .config import TrackRecoveryHelixConfig, load_config
from .association import (
    AssociationCandidate,
    AssociationLedger,
    CandidateGenerator,
    GreedyResolver,
    generate_candidates,
    resolve,
)
from .algorithm import TrackRecoveryHelixAlgorithm, RecoveryResult

# I/O & metrics (plotting imported lazily by the CLI)
from .data import load_events, associations_frame
from .metrics import compute_association_metrics
