"""EcoPulse Core - observation trust primitives."""

from .config import CoreSettings, clear_config_cache, get_config
from .engine import TrustEngine
from .exceptions import (
    AlreadyVoted,
    ConcurrentModification,
    ConfigException,
    ConflictDetected,
    DatabaseException,
    EcoPulseException,
    InsufficientCredibility,
    InvalidTransition,
    NotEligible,
    NotFoundError,
    NotOwner,
    ValidationException,
)
from .models import (
    Actor,
    Coordinate,
    ExpertiseLevel,
    Observation,
    ObservationState,
    ProtectedZone,
    ZoneStatus,
)
from .store import InMemoryStore, ObservationStore, retry_on_conflict

__all__ = [
    # Engine
    "TrustEngine",
    # Config
    "CoreSettings",
    "get_config",
    "clear_config_cache",
    # Models
    "Actor",
    "Coordinate",
    "ExpertiseLevel",
    "Observation",
    "ObservationState",
    "ProtectedZone",
    "ZoneStatus",
    # Stores
    "ObservationStore",
    "InMemoryStore",
    "retry_on_conflict",
    # Exceptions
    "EcoPulseException",
    "DatabaseException",
    "ValidationException",
    "ConfigException",
    "NotFoundError",
    "InsufficientCredibility",
    "NotEligible",
    "AlreadyVoted",
    "NotOwner",
    "ConflictDetected",
    "ConcurrentModification",
    "InvalidTransition",
]
