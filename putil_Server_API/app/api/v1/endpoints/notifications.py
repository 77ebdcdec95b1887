# notifications.py
# Description: Live trigger notifications over WebSocket, plus the scanner's persisted window state.
#
# Imports
import asyncio
from typing import Optional
#
# 3rd-party imports
from fastapi import APIRouter, Depends, HTTPException, Query, WebSocket, WebSocketDisconnect, status
from loguru import logger
#
# Local Imports
from putil_Server_API.app.api.v1.API_Deps.DB_Deps import (
    get_notification_channel,
    get_records_db,
    get_trigger_scanner,
)
from putil_Server_API.app.api.v1.schemas.notification_schemas import ScanStateResponse
from putil_Server_API.app.core.AuthNZ.User_DB_Handling import get_request_user, resolve_user, User
from putil_Server_API.app.core.DB_Management.Records_DB import RecordsDB, RecordsDBError
from putil_Server_API.app.core.Sync.exceptions import PublishFailure
from putil_Server_API.app.core.Triggers.notifier import BroadcastChannel
from putil_Server_API.app.core.Triggers.scanner import TriggerScanner
#
#######################################################################################################################
#
# Functions:

router = APIRouter()


def _bearer_from_header(authorization: Optional[str]) -> Optional[str]:
    if authorization and authorization.lower().startswith("bearer "):
        return authorization[7:].strip()
    return None


async def _wait_for_disconnect(websocket: WebSocket):
    # Anything the client sends (e.g. keep-alive pings) is ignored.
    try:
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect:
        return


@router.websocket("/ws")
async def notifications_ws(
    websocket: WebSocket,
    token: Optional[str] = Query(None),
    api_key: Optional[str] = Query(None),
    channel: BroadcastChannel = Depends(get_notification_channel),
):
    """
    Streams reminder_due, deadline_due and event_due notifications for the authenticated user.
    Credentials come from the usual headers or, for browser clients, the `token` / `api_key` query parameters.
    """
    api_key = api_key or websocket.headers.get("x-api-key")
    token = token or _bearer_from_header(websocket.headers.get("authorization"))
    try:
        user = resolve_user(api_key, token)
    except HTTPException as e:
        logger.warning(f"Notification WebSocket rejected: {e.detail}")
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    try:
        queue = channel.subscribe(user.id)
    except PublishFailure:
        await websocket.close(code=status.WS_1001_GOING_AWAY)
        return

    await websocket.accept()
    logger.info(f"[{user.username}] Notification WebSocket connected.")
    receiver = asyncio.create_task(_wait_for_disconnect(websocket))
    try:
        while True:
            getter = asyncio.create_task(queue.get())
            done, _ = await asyncio.wait({getter, receiver}, return_when=asyncio.FIRST_COMPLETED)
            if receiver in done:
                getter.cancel()
                break
            event = getter.result()
            if event is None:
                # Channel closed at shutdown.
                await websocket.close(code=status.WS_1001_GOING_AWAY)
                break
            await websocket.send_json(event)
    except WebSocketDisconnect:
        logger.debug(f"[{user.username}] Notification WebSocket dropped while sending.")
    finally:
        receiver.cancel()
        channel.unsubscribe(user.id, queue)
        logger.info(f"[{user.username}] Notification WebSocket disconnected.")


@router.get("/scan-state",
            response_model=ScanStateResponse,
            summary="Where each trigger class has been scanned up to")
async def get_scan_state(
    current_user: User = Depends(get_request_user),
    db: RecordsDB = Depends(get_records_db),
    scanner: TriggerScanner = Depends(get_trigger_scanner),
):
    try:
        scanned_until = await asyncio.to_thread(db.list_scan_state)
    except RecordsDBError as e:
        logger.error(f"[{current_user.username}] Failed to read scan state: {e}")
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Could not read scan state.")
    return ScanStateResponse(
        scanned_until=scanned_until,
        interval_seconds=int(scanner.interval.total_seconds()),
        running=scanner.running,
    )

#
# End of notifications.py
#######################################################################################################################
