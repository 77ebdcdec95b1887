# account.py
# Description: Per-account settings. Currently the IANA timezone that anchors due boundaries,
#   recurrence steps and naive payload timestamps.
#
# Imports
import asyncio
#
# 3rd-party imports
from fastapi import APIRouter, Depends, HTTPException, status
from loguru import logger
#
# Local Imports
from putil_Server_API.app.api.v1.API_Deps.DB_Deps import get_records_db
from putil_Server_API.app.api.v1.schemas.notification_schemas import TimezoneRequest, TimezoneResponse
from putil_Server_API.app.core.AuthNZ.User_DB_Handling import get_request_user, User
from putil_Server_API.app.core.config import settings
from putil_Server_API.app.core.DB_Management.Records_DB import RecordsDB, RecordsDBError
from putil_Server_API.app.core.Utils.time_utils import is_valid_timezone
#
#######################################################################################################################
#
# Functions:

router = APIRouter()


@router.get("/timezone", response_model=TimezoneResponse, summary="Get the account timezone")
async def get_timezone(
    current_user: User = Depends(get_request_user),
    db: RecordsDB = Depends(get_records_db),
):
    try:
        stored = await asyncio.to_thread(db.get_owner_timezone, current_user.id)
    except RecordsDBError as e:
        logger.error(f"[{current_user.username}] Failed to read timezone: {e}")
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Could not read timezone.")
    if stored is None:
        return TimezoneResponse(timezone=settings["DEFAULT_TIMEZONE"], is_default=True)
    return TimezoneResponse(timezone=stored)


@router.put("/timezone", response_model=TimezoneResponse, summary="Set the account timezone")
async def set_timezone(
    request: TimezoneRequest,
    current_user: User = Depends(get_request_user),
    db: RecordsDB = Depends(get_records_db),
):
    """Takes effect on the next sync call and the next scanner tick; stored instants are not rewritten."""
    if not is_valid_timezone(request.timezone):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST,
                            detail=f"Unknown timezone: {request.timezone}")
    try:
        await asyncio.to_thread(db.set_owner_timezone, current_user.id, request.timezone)
    except RecordsDBError as e:
        logger.error(f"[{current_user.username}] Failed to store timezone: {e}")
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Could not store timezone.")
    return TimezoneResponse(timezone=request.timezone)

#
# End of account.py
#######################################################################################################################
