# Sync/__init__.py
from .exceptions import (
    SyncError,
    UnknownEntityError,
    RecordNotFound,
    IdentityMismatch,
    TransactionFailure,
    PublishFailure,
)
from .models import ClientMutation, RejectedMutation, ReconcileResult, parse_timestamp
from .conflict import ConflictResolver, RevisionStrategy, Decision, Verdict, decide
from .entities import ENTITY_CONFIG, EntitySpec, get_entity_spec
from .coordinator import SyncCoordinator

__all__ = [
    "SyncError",
    "UnknownEntityError",
    "RecordNotFound",
    "IdentityMismatch",
    "TransactionFailure",
    "PublishFailure",
    "ClientMutation",
    "RejectedMutation",
    "ReconcileResult",
    "parse_timestamp",
    "ConflictResolver",
    "RevisionStrategy",
    "Decision",
    "Verdict",
    "decide",
    "ENTITY_CONFIG",
    "EntitySpec",
    "get_entity_spec",
    "SyncCoordinator",
]
