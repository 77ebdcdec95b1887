# Sync/coordinator.py
# Description: Server-side reconciliation of a client's offline mutation log with the record store.
#
# Imports
import sqlite3
from dataclasses import replace
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Union
#
# 3rd-party Libraries
from loguru import logger
#
# Local Imports
from putil_Server_API.app.core.DB_Management.Records_DB import (
    ConflictError,
    InputError,
    RecordsDB,
    RecordsDBError,
    format_db_timestamp,
)
from putil_Server_API.app.core.Sync.conflict import ConflictResolver, RevisionStrategy, Verdict
from putil_Server_API.app.core.Sync.entities import EntitySpec, get_entity_spec
from putil_Server_API.app.core.Sync.exceptions import IdentityMismatch, RecordNotFound, TransactionFailure
from putil_Server_API.app.core.Sync.models import (
    ClientMutation,
    REASON_IDENTITY_MISMATCH,
    REASON_INVALID_PAYLOAD,
    REASON_NOT_FOUND,
    REASON_STALE,
    ReconcileResult,
    RejectedMutation,
    parse_timestamp,
)
from putil_Server_API.app.core.Utils.time_utils import coerce_zoneinfo
#
#######################################################################################################################
#
# Functions:


class SyncCoordinator:
    """
    Applies a batch of client mutations for one owner and entity type, then returns every server change
    the client has not seen.

    The whole call runs in one BEGIN IMMEDIATE transaction: the writer lock serializes revision bumps
    across devices, and a storage fault rolls back every mutation in the batch. No record state is kept
    between calls.
    """

    def __init__(self, db: RecordsDB, resolver: Optional[ConflictResolver] = None, default_timezone: str = "UTC",
                 now_func: Optional[Callable[[], datetime]] = None):
        self.db = db
        self.resolver = resolver or RevisionStrategy()
        self.default_timezone = default_timezone
        self._now = now_func or (lambda: datetime.now(timezone.utc))

    @staticmethod
    def normalize_watermark(watermark: Union[str, datetime, None]) -> Optional[str]:
        """Client watermark -> stored timestamp format. None means 'from the beginning'."""
        if watermark is None or watermark == "":
            return None
        if isinstance(watermark, datetime):
            return format_db_timestamp(watermark)
        return format_db_timestamp(parse_timestamp(watermark))

    def reconcile(self, owner_id: int, entity_type: str, watermark: Union[str, datetime, None],
                  mutations: List[ClientMutation], device_id: Optional[str] = None) -> ReconcileResult:
        """
        Args:
            owner_id: Account whose records are reconciled.
            entity_type: One of the registered entity types (tasks, transactions, events).
            watermark: The watermark the client stored after its previous successful call, or None.
            mutations: The client's offline mutations, applied in order.
            device_id: Originating device, recorded with each accepted write.

        Returns:
            ReconcileResult: accepted entities, rejected mutations with the current server state,
            server changes after the watermark (minus records accepted in this call), and the new watermark.

        Raises:
            UnknownEntityError: `entity_type` is not registered.
            ValueError: The watermark is not a valid ISO-8601 timestamp.
            TransactionFailure: A storage fault aborted the call. Nothing was applied; retry is safe.
        """
        spec = get_entity_spec(entity_type)
        since = self.normalize_watermark(watermark)
        logger.info(f"Reconcile {entity_type} for owner {owner_id}: {len(mutations)} mutation(s), "
                    f"watermark={since}, device={device_id}")

        try:
            with self.db.transaction(immediate=True) as conn:
                txn_ts = self.db.next_transaction_timestamp(conn, self._now())
                zone = coerce_zoneinfo(self.db.get_owner_timezone(owner_id, conn), self.default_timezone)

                accepted: List[Dict[str, Any]] = []
                accepted_ids = set()
                rejected: List[RejectedMutation] = []
                # record id -> revision the batch started from, for rebasing follow-up mutations
                batch_base: Dict[int, int] = {}

                for mutation in mutations:
                    outcome = self._apply_mutation(conn, spec, owner_id, mutation, txn_ts, zone, device_id,
                                                   batch_base)
                    if isinstance(outcome, RejectedMutation):
                        rejected.append(outcome)
                    else:
                        accepted.append(outcome)
                        accepted_ids.add(outcome["id"])

                server_changes = [
                    spec.row_to_entity(row)
                    for row in self.db.list_changes_since(conn, spec.table, owner_id, since, exclude_ids=accepted_ids)
                ]
        except (RecordsDBError, sqlite3.Error) as e:
            logger.error(f"Reconcile {entity_type} for owner {owner_id} failed and was rolled back: {e}")
            raise TransactionFailure(f"Reconciliation failed, no changes were applied: {e}") from e

        logger.info(f"Reconcile {entity_type} for owner {owner_id} committed at {txn_ts}: "
                    f"{len(accepted)} accepted, {len(rejected)} rejected, {len(server_changes)} server change(s).")
        return ReconcileResult(accepted=accepted, rejected=rejected, server_changes=server_changes, watermark=txn_ts)

    # --- Per-mutation processing (inside the reconcile transaction) ---

    def _resolve_target(self, conn: sqlite3.Connection, spec: EntitySpec, owner_id: int,
                        mutation: ClientMutation) -> Optional[Dict[str, Any]]:
        """
        Finds the stored record a mutation refers to. The clientKey mapping is authoritative; an id
        is only honoured when it agrees with it.

        Raises:
            RecordNotFound: The mutation names an id the owner does not hold.
            IdentityMismatch: The id and the clientKey point at different records.
        """
        by_key = self.db.get_record_by_client_key(conn, spec.table, owner_id, mutation.client_key)
        if mutation.record_id is None:
            return by_key
        if by_key is not None:
            if by_key["id"] != mutation.record_id:
                raise IdentityMismatch("id does not match the record bound to this clientKey.", server_row=by_key)
            return by_key
        by_id = self.db.get_record(conn, spec.table, owner_id, mutation.record_id)
        if by_id is None:
            raise RecordNotFound(f"No {spec.entity_type} record with this id for owner {owner_id}.",
                                 entity=spec.entity_type, record_id=mutation.record_id)
        # The id exists but is bound to another clientKey.
        raise IdentityMismatch("id is bound to a different clientKey.", server_row=by_id)

    def _apply_mutation(self, conn: sqlite3.Connection, spec: EntitySpec, owner_id: int, mutation: ClientMutation,
                        txn_ts: str, zone, device_id: Optional[str],
                        batch_base: Dict[int, int]) -> Union[Dict[str, Any], RejectedMutation]:
        try:
            current = self._resolve_target(conn, spec, owner_id, mutation)
        except RecordNotFound as e:
            logger.warning(f"Rejecting {spec.entity_type} mutation {mutation.client_key}: {e}")
            return self._reject(conn, spec, owner_id, mutation, None, REASON_NOT_FOUND, txn_ts, device_id)
        except IdentityMismatch as e:
            other_row = e.server_row
            logger.warning(f"Rejecting {spec.entity_type} mutation {mutation.client_key}: id {mutation.record_id} "
                           f"does not belong to this clientKey.")
            return self._reject(conn, spec, owner_id, mutation, other_row, REASON_IDENTITY_MISMATCH, txn_ts,
                                device_id)

        mutation = self._normalize_revision(mutation, current, batch_base)
        decision = self.resolver.resolve(current, mutation)

        if decision.verdict is Verdict.REJECT:
            return self._reject(conn, spec, owner_id, mutation, current, decision.reason, txn_ts, device_id)

        if decision.verdict is Verdict.UNCHANGED:
            self.db.append_sync_log(conn, owner_id, spec.table, current["id"], mutation.client_key, "delete",
                                    device_id, "success", txn_ts)
            return spec.row_to_entity(current)

        try:
            fields = {} if mutation.deleted else spec.coerce_payload(mutation.payload, zone)
        except InputError as e:
            logger.warning(f"Rejecting {spec.entity_type} mutation {mutation.client_key}: {e}")
            return self._reject(conn, spec, owner_id, mutation, current, REASON_INVALID_PAYLOAD, txn_ts, device_id,
                                detail=str(e))

        try:
            record_id, action = self._write(conn, spec, owner_id, mutation, current, fields, txn_ts, device_id)
        except ConflictError as e:
            # Another writer moved the row between our read and the guarded write.
            logger.warning(f"Guarded write lost for {spec.entity_type} mutation {mutation.client_key}: {e}")
            latest = self.db.get_record_by_client_key(conn, spec.table, owner_id, mutation.client_key)
            return self._reject(conn, spec, owner_id, mutation, latest, REASON_STALE, txn_ts, device_id)

        batch_base.setdefault(record_id, current["revision"] if current else 0)
        self.db.append_sync_log(conn, owner_id, spec.table, record_id, mutation.client_key, action, device_id,
                                "success", txn_ts)
        stored = self.db.get_record(conn, spec.table, owner_id, record_id)
        logger.debug(f"Accepted {action} of {spec.entity_type} id={record_id} -> revision {stored['revision']}")
        return spec.row_to_entity(stored)

    @staticmethod
    def _normalize_revision(mutation: ClientMutation, current: Optional[Dict[str, Any]],
                            batch_base: Dict[int, int]) -> ClientMutation:
        if current is None:
            return mutation
        believed = mutation.believed_revision
        base = batch_base.get(current["id"])
        if base is not None and believed == base:
            # An earlier mutation in this batch already advanced the record the client was editing.
            believed = current["revision"]
        elif believed == 0 and current["revision"] == 1:
            # A create replayed after its first submission committed (e.g. the response was lost).
            believed = 1
        if believed != mutation.believed_revision:
            logger.debug(f"clientKey {mutation.client_key}: believed revision {mutation.believed_revision} "
                         f"treated as {believed}")
            return replace(mutation, believed_revision=believed)
        return mutation

    def _write(self, conn: sqlite3.Connection, spec: EntitySpec, owner_id: int, mutation: ClientMutation,
               current: Optional[Dict[str, Any]], fields: Dict[str, Any], txn_ts: str, device_id: Optional[str]):
        if current is None:
            record_id = self.db.insert_record(conn, spec.table, owner_id, mutation.client_key, fields, txn_ts,
                                              device_id)
            if mutation.deleted:
                # Created and deleted before the device ever synced; keep the tombstone so the key stays bound.
                self.db.tombstone_record(conn, spec.table, owner_id, record_id, 1, txn_ts, device_id)
            return record_id, "create"

        if mutation.deleted:
            self.db.tombstone_record(conn, spec.table, owner_id, current["id"], mutation.believed_revision, txn_ts,
                                     device_id)
            return current["id"], "delete"

        self.db.update_record(conn, spec.table, owner_id, current["id"], mutation.believed_revision, fields, txn_ts,
                              device_id, clear_columns=spec.cleared_stamps(fields, current))
        return current["id"], "update"

    def _reject(self, conn: sqlite3.Connection, spec: EntitySpec, owner_id: int, mutation: ClientMutation,
                server_row: Optional[Dict[str, Any]], reason: str, txn_ts: str, device_id: Optional[str],
                detail: Optional[str] = None) -> RejectedMutation:
        conflict_data = {
            "reason": reason,
            "believedRevision": mutation.believed_revision,
            "serverRevision": server_row["revision"] if server_row else None,
        }
        if detail:
            conflict_data["detail"] = detail
        self.db.append_sync_log(conn, owner_id, spec.table, server_row["id"] if server_row else mutation.record_id,
                                mutation.client_key, mutation.action, device_id, "conflict", txn_ts,
                                conflict_data=conflict_data)
        logger.debug(f"Rejected {spec.entity_type} mutation {mutation.client_key}: {reason}")
        return RejectedMutation(
            client_key=mutation.client_key,
            reason=reason,
            server_state=spec.row_to_entity(server_row) if server_row else None,
        )

#
# End of coordinator.py
#######################################################################################################################
