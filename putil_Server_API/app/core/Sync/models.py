# Sync/models.py
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from loguru import logger


# Reasons attached to rejected mutations
REASON_STALE = "stale"
REASON_TOMBSTONED = "tombstoned"
REASON_INVALID_REVISION = "invalid_revision"
REASON_NOT_FOUND = "not_found"
REASON_IDENTITY_MISMATCH = "identity_mismatch"
REASON_INVALID_PAYLOAD = "invalid_payload"


def parse_timestamp(ts_str: Optional[str]) -> Optional[datetime]:
    """
    Parses an ISO-8601 timestamp sent by a client. Naive values are assumed UTC.
    Returns None for empty input and raises ValueError for anything unparseable.
    """
    if not ts_str:
        return None
    try:
        dt = datetime.fromisoformat(ts_str.strip().replace('Z', '+00:00'))
    except ValueError as e:
        logger.warning(f"Could not parse timestamp string: {ts_str}")
        raise ValueError(f"Invalid ISO-8601 timestamp: {ts_str!r}") from e
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


@dataclass
class ClientMutation:
    client_key: str
    believed_revision: int = 0
    record_id: Optional[int] = None
    deleted: bool = False
    payload: Dict[str, Any] = field(default_factory=dict)
    # Device-side edit time; only consulted for entity types without revision tracking.
    client_changed_at: Optional[datetime] = None

    @property
    def action(self) -> str:
        if self.deleted:
            return "delete"
        return "create" if self.believed_revision == 0 and self.record_id is None else "update"

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ClientMutation":
        """Creates a mutation from the wire format (`clientKey`, `believedRevision`, ...)."""
        if not data.get("clientKey"):
            raise ValueError("Mutation is missing clientKey")
        return cls(
            client_key=data["clientKey"],
            believed_revision=int(data.get("believedRevision", 0)),
            record_id=data.get("id"),
            deleted=bool(data.get("deleted", False)),
            payload=dict(data.get("payload") or {}),
            client_changed_at=parse_timestamp(data.get("clientChangedAt")),
        )


@dataclass
class RejectedMutation:
    client_key: str
    reason: str
    server_state: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        return {"clientKey": self.client_key, "serverState": self.server_state, "reason": self.reason}


@dataclass
class ReconcileResult:
    accepted: List[Dict[str, Any]]
    rejected: List[RejectedMutation]
    server_changes: List[Dict[str, Any]]
    watermark: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "accepted": self.accepted,
            "rejected": [r.to_dict() for r in self.rejected],
            "serverChanges": self.server_changes,
            "watermark": self.watermark,
        }
