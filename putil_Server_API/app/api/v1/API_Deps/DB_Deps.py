# DB_Deps.py
# Description: Process-wide record store, sync coordinator, notification channel and trigger scanner,
#   exposed as FastAPI dependencies.
#
# Imports
import threading
from typing import Optional
#
# 3rd-party Libraries
from fastapi import HTTPException, status
from loguru import logger
#
# Local Imports
from putil_Server_API.app.core.config import settings
from putil_Server_API.app.core.DB_Management.Records_DB import RecordsDB, RecordsDBError, SchemaError
from putil_Server_API.app.core.Sync.coordinator import SyncCoordinator
from putil_Server_API.app.core.Triggers.notifier import BroadcastChannel
from putil_Server_API.app.core.Triggers.scanner import TriggerScanner
#
#######################################################################################################################

# --- Configuration (using imported settings dictionary) ---
RECORDS_DB_PATH = settings["RECORDS_DB_PATH"]
SERVER_CLIENT_ID = settings["SERVER_CLIENT_ID"]

# --- Global Instances ---
# Every account shares one store; rows are scoped by owner_id.
_records_db: Optional[RecordsDB] = None
_sync_coordinator: Optional[SyncCoordinator] = None
_notification_channel: Optional[BroadcastChannel] = None
_trigger_scanner: Optional[TriggerScanner] = None
_deps_lock = threading.Lock()  # Protects creation of the instances above

#######################################################################################################################

# --- Dependency Functions ---

def get_records_db() -> RecordsDB:
    """
    FastAPI dependency returning the shared RecordsDB, creating it (and its schema) on first use.

    Raises:
        HTTPException: 500 if the database cannot be opened or initialized.
    """
    global _records_db
    if _records_db is not None:
        return _records_db

    with _deps_lock:
        # Double-check in case another thread created it while waiting
        if _records_db is not None:
            return _records_db
        try:
            RECORDS_DB_PATH.parent.mkdir(parents=True, exist_ok=True)
            logger.info(f"Initializing records database at path: {RECORDS_DB_PATH}")
            _records_db = RecordsDB(db_path=RECORDS_DB_PATH, client_id=SERVER_CLIENT_ID)
        except (RecordsDBError, SchemaError) as e:
            logger.error(f"Failed to initialize records database at {RECORDS_DB_PATH}: {e}", exc_info=True)
            raise HTTPException(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                detail=f"Could not initialize records database: {e}"
            ) from e
        except OSError as e:
            logger.error(f"Could not create storage directory for {RECORDS_DB_PATH}: {e}", exc_info=True)
            raise HTTPException(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                detail="Could not initialize storage directory for the records database."
            ) from e
    return _records_db


def get_sync_coordinator() -> SyncCoordinator:
    global _sync_coordinator
    if _sync_coordinator is None:
        db = get_records_db()
        with _deps_lock:
            if _sync_coordinator is None:
                _sync_coordinator = SyncCoordinator(db, default_timezone=settings["DEFAULT_TIMEZONE"])
    return _sync_coordinator


def get_notification_channel() -> BroadcastChannel:
    global _notification_channel
    with _deps_lock:
        if _notification_channel is None:
            _notification_channel = BroadcastChannel(queue_size=settings["NOTIFICATION_QUEUE_SIZE"])
    return _notification_channel


def get_trigger_scanner() -> TriggerScanner:
    global _trigger_scanner
    if _trigger_scanner is None:
        db = get_records_db()
        channel = get_notification_channel()
        with _deps_lock:
            if _trigger_scanner is None:
                _trigger_scanner = TriggerScanner(
                    db,
                    channel,
                    interval_seconds=settings["SCAN_INTERVAL_SECONDS"],
                    max_catchup=settings["SCANNER_MAX_CATCHUP"],
                    default_timezone=settings["DEFAULT_TIMEZONE"],
                )
    return _trigger_scanner


async def shutdown_dependencies():
    """Stops the scanner, releases notification subscribers and closes every DB connection."""
    global _records_db, _sync_coordinator, _notification_channel, _trigger_scanner
    if _trigger_scanner is not None:
        await _trigger_scanner.stop()
    if _notification_channel is not None:
        _notification_channel.close()
    if _records_db is not None:
        logger.info("App Shutdown: Closing records DB connections")
        _records_db.close_all_connections()
    with _deps_lock:
        _records_db = None
        _sync_coordinator = None
        _notification_channel = None
        _trigger_scanner = None

#
# End of DB_Deps.py
########################################################################################################################
