# sync.py
# Description: FastAPI endpoints for offline record sync (tasks, transactions, events) and the sync audit log.
#
# Imports
import asyncio
from typing import List, Optional
#
# 3rd-party imports
from fastapi import (
    APIRouter,
    Depends,
    Header,
    HTTPException,
    Query,
    status,
)
from fastapi.responses import JSONResponse
from loguru import logger
#
# Local Imports
from putil_Server_API.app.api.v1.API_Deps.DB_Deps import get_records_db, get_sync_coordinator
from putil_Server_API.app.api.v1.schemas.sync_server_models import SyncLogEntryOut, SyncRequest, SyncResponse
from putil_Server_API.app.core.AuthNZ.User_DB_Handling import get_request_user, User
from putil_Server_API.app.core.config import settings
from putil_Server_API.app.core.DB_Management.Records_DB import RecordsDB, RecordsDBError
from putil_Server_API.app.core.Sync.coordinator import SyncCoordinator
from putil_Server_API.app.core.Sync.entities import get_entity_spec
from putil_Server_API.app.core.Sync.exceptions import TransactionFailure, UnknownEntityError
from putil_Server_API.app.core.Sync.models import ClientMutation
#
#######################################################################################################################
#
# Functions:

router = APIRouter()

# Flow of a sync call:
#     The device sends its offline mutations plus the watermark it stored after its last successful sync.
#     SyncCoordinator.reconcile runs in a worker thread (the record store is synchronous sqlite3) and applies
#     every mutation under the revision rule in one write transaction. The response lists what was accepted,
#     what was rejected (with the server's current copy), everything else that changed since the watermark,
#     and the new watermark. A 503 means nothing was applied and the same request can be resent as-is.

####################################################################################################
#
# --- FastAPI Endpoint Definitions ---

@router.get("/log",
            response_model=List[SyncLogEntryOut],
            summary="Recent sync audit log entries for the current user")
async def get_sync_log(
    entity_type: Optional[str] = Query(None, description="Restrict to one entity type (tasks, transactions, events)."),
    limit: int = Query(100, ge=1, le=1000),
    current_user: User = Depends(get_request_user),
    db: RecordsDB = Depends(get_records_db),
):
    table = None
    if entity_type is not None:
        try:
            table = get_entity_spec(entity_type).table
        except UnknownEntityError as e:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    try:
        return await asyncio.to_thread(db.get_sync_log_entries, current_user.id, limit, table)
    except RecordsDBError as e:
        logger.error(f"[{current_user.username}] Failed to read sync log: {e}")
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Could not read sync log.")


@router.post("/{entity_type}",
             response_model=SyncResponse,
             summary="Push offline mutations and pull server changes for one entity type")
async def sync_entities(
    entity_type: str,
    request: SyncRequest,
    x_device_id: Optional[str] = Header(None, alias="X-Device-ID"),
    current_user: User = Depends(get_request_user),
    coordinator: SyncCoordinator = Depends(get_sync_coordinator),
):
    """
    Reconciles the device's mutations against the server copy of `entity_type` for the current user.

    - **accepted**: records written by this call, at their new revision.
    - **rejected**: mutations that lost the revision check, each with the server's current record and a reason.
    - **serverChanges**: records changed since `watermark` by other devices or the server itself.
    - **watermark**: opaque value to send with the next call.
    """
    try:
        get_entity_spec(entity_type)
    except UnknownEntityError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))

    max_mutations = settings["SYNC_MAX_MUTATIONS"]
    if len(request.mutations) > max_mutations:
        raise HTTPException(
            status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
            detail=f"At most {max_mutations} mutations are accepted per sync call; got {len(request.mutations)}."
        )

    try:
        SyncCoordinator.normalize_watermark(request.watermark)
        mutations = [ClientMutation.from_dict(m.to_wire()) for m in request.mutations]
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=f"Invalid sync request: {e}")

    logger.info(f"[{current_user.username}] Sync {entity_type} from device {x_device_id or 'unknown'}: "
                f"{len(mutations)} mutation(s).")
    try:
        result = await asyncio.to_thread(
            coordinator.reconcile,
            current_user.id,
            entity_type,
            request.watermark,
            mutations,
            x_device_id,
        )
    except TransactionFailure as e:
        logger.error(f"[{current_user.username}] Sync {entity_type} aborted: {e}")
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content={"detail": "Sync could not be applied; no changes were made. Retry the same request.",
                     "retryable": True},
        )
    return result.to_dict()

#
# End of sync.py
#######################################################################################################################
