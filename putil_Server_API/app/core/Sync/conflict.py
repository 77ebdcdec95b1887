# Sync/conflict.py
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

from loguru import logger

from .models import (
    ClientMutation,
    REASON_INVALID_REVISION,
    REASON_NOT_FOUND,
    REASON_STALE,
    REASON_TOMBSTONED,
    parse_timestamp,
)


class Verdict(str, Enum):
    ACCEPT = "accept"
    REJECT = "reject"
    # Accepted without a write: a delete replayed against an existing tombstone.
    UNCHANGED = "unchanged"


@dataclass(frozen=True)
class Decision:
    verdict: Verdict
    reason: Optional[str] = None

    @property
    def accepted(self) -> bool:
        return self.verdict is not Verdict.REJECT


ACCEPT = Decision(Verdict.ACCEPT)
UNCHANGED = Decision(Verdict.UNCHANGED)


def decide(server_revision: Optional[int],
           client_believed_revision: int,
           server_changed_at: Optional[datetime] = None,
           client_changed_at: Optional[datetime] = None,
           *,
           record_exists: bool = True,
           server_deleted: bool = False,
           is_delete: bool = False) -> Decision:
    """
    Decides whether a client mutation may be applied on top of the server's current state.

    Pure function: no I/O, no clock. The comparison is on revisions; `server_revision=None`
    means the entity type does not track revisions and falls back to last-write-wins on the
    change timestamps, where ties go to the server.

    Args:
        server_revision: Current server revision, or None when revisions are not tracked.
        client_believed_revision: Revision the client last saw (0 for a record it created offline).
        server_changed_at: Server's last change time, used only on the timestamp fallback.
        client_changed_at: Client's edit time, used only on the timestamp fallback.
        record_exists: False when no server record matches the mutation.
        server_deleted: The server record is a tombstone.
        is_delete: The mutation is a delete.

    Returns:
        Decision: ACCEPT, UNCHANGED (idempotent delete of a tombstone) or REJECT with a reason.
    """
    if not record_exists:
        if client_believed_revision == 0:
            return ACCEPT
        return Decision(Verdict.REJECT, REASON_NOT_FOUND)

    # Tombstones are permanent; only a repeat of the delete itself is a no-op success.
    if server_deleted:
        return UNCHANGED if is_delete else Decision(Verdict.REJECT, REASON_TOMBSTONED)

    if server_revision is None:
        if client_changed_at is None or server_changed_at is None:
            return Decision(Verdict.REJECT, REASON_STALE)
        if client_changed_at > server_changed_at:
            return ACCEPT
        return Decision(Verdict.REJECT, REASON_STALE)

    if client_believed_revision == server_revision:
        return ACCEPT
    if client_believed_revision < server_revision:
        return Decision(Verdict.REJECT, REASON_STALE)
    return Decision(Verdict.REJECT, REASON_INVALID_REVISION)


class ConflictResolver(ABC):
    """Abstract base class for conflict resolution strategies."""

    @abstractmethod
    def resolve(self, server_row: Optional[Dict[str, Any]], mutation: ClientMutation) -> Decision:
        """
        Determines the outcome for a client mutation.

        Args:
            server_row: Current stored row for the record (tombstones included), or None if it doesn't exist.
            mutation: The incoming mutation, with its believed revision already normalized by the coordinator.
        """
        pass


class RevisionStrategy(ConflictResolver):
    """Accepts a mutation only if the client saw the server's current revision."""

    def resolve(self, server_row: Optional[Dict[str, Any]], mutation: ClientMutation) -> Decision:
        if server_row is None:
            decision = decide(None, mutation.believed_revision, record_exists=False, is_delete=mutation.deleted)
        else:
            decision = decide(
                server_row.get("revision"),
                mutation.believed_revision,
                parse_timestamp(server_row.get("changed_at")),
                mutation.client_changed_at,
                server_deleted=bool(server_row.get("deleted")),
                is_delete=mutation.deleted,
            )
        logger.debug(
            f"Conflict check (clientKey: {mutation.client_key}): believed={mutation.believed_revision}, "
            f"server={server_row.get('revision') if server_row else None}, delete={mutation.deleted}. "
            f"Outcome: {decision.verdict.value}{' (' + decision.reason + ')' if decision.reason else ''}.")
        return decision
