# sync_server_models.py
# Description: Request and response models for the record sync API.
#
# Imports
from typing import Any, Dict, List, Optional
#
# 3rd-party Libraries
from pydantic import BaseModel, Field, ConfigDict
#
# Local Imports
#
########################################################################################################################
#
# Functions:

# --- Pydantic Models ---

class MutationIn(BaseModel):
    """One offline change made on the device. `believedRevision` 0 means the device is creating the record."""
    client_key: str = Field(..., alias="clientKey", min_length=1,
                            description="Device-generated identity, stable across retries of the same record.")
    believed_revision: int = Field(0, alias="believedRevision", ge=0,
                                   description="The revision the device last saw for this record.")
    id: Optional[int] = Field(None, description="Server id, if the device has already learned it.")
    deleted: bool = Field(False, description="True when the device deleted the record.")
    payload: Dict[str, Any] = Field(default_factory=dict, description="Entity fields the device changed.")
    client_changed_at: Optional[str] = Field(None, alias="clientChangedAt",
                                             description="Device-side edit time (ISO 8601).")

    model_config = ConfigDict(
        populate_by_name=True,
        json_schema_extra={
            "example": {
                "clientKey": "device-a:task:7f3c",
                "believedRevision": 3,
                "id": 42,
                "deleted": False,
                "payload": {"title": "Pay rent", "due_date": "2024-03-01T09:00:00"},
            }
        }
    )

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True)


class SyncRequest(BaseModel):
    """
    Body of POST /sync/{entity_type}. `watermark` is the value returned by the previous successful call;
    omit it on the first sync to receive every record.
    """
    watermark: Optional[str] = Field(None, description="Watermark from the previous sync (ISO 8601), or null.")
    mutations: List[MutationIn] = Field(default_factory=list)

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "watermark": "2024-02-28T17:04:11.120391Z",
                "mutations": [
                    {"clientKey": "device-a:task:7f3c", "believedRevision": 0, "payload": {"title": "Pay rent"}}
                ],
            }
        }
    )


class EntityOut(BaseModel):
    id: int
    client_key: str = Field(..., alias="clientKey")
    revision: int
    changed_at: str = Field(..., alias="changedAt")
    created_at: Optional[str] = Field(None, alias="createdAt")
    deleted: bool
    deleted_at: Optional[str] = Field(None, alias="deletedAt")
    payload: Dict[str, Any]

    model_config = ConfigDict(populate_by_name=True)


class RejectedOut(BaseModel):
    client_key: str = Field(..., alias="clientKey")
    reason: str = Field(..., description="stale, tombstoned, not_found, invalid_revision, identity_mismatch "
                                         "or invalid_payload.")
    server_state: Optional[EntityOut] = Field(None, alias="serverState")

    model_config = ConfigDict(populate_by_name=True)


class SyncResponse(BaseModel):
    accepted: List[EntityOut]
    rejected: List[RejectedOut]
    server_changes: List[EntityOut] = Field(..., alias="serverChanges")
    watermark: str = Field(..., description="Store this and send it with the next sync.")

    model_config = ConfigDict(
        populate_by_name=True,
        json_schema_extra={
            "example": {
                "accepted": [
                    {"id": 42, "clientKey": "device-a:task:7f3c", "revision": 4,
                     "changedAt": "2024-02-28T17:05:00.000001Z", "createdAt": "2024-02-20T08:00:00.000000Z",
                     "deleted": False, "deletedAt": None, "payload": {"title": "Pay rent"}}
                ],
                "rejected": [
                    {"clientKey": "device-a:task:91aa", "reason": "stale",
                     "serverState": {"id": 43, "clientKey": "device-a:task:91aa", "revision": 7,
                                     "changedAt": "2024-02-28T16:00:00.000000Z", "createdAt": None,
                                     "deleted": False, "deletedAt": None, "payload": {"title": "Groceries"}}}
                ],
                "serverChanges": [],
                "watermark": "2024-02-28T17:05:00.000001Z",
            }
        }
    )


class SyncLogEntryOut(BaseModel):
    """A single row of the sync audit log."""
    log_id: int
    table_name: str
    record_id: Optional[int] = None
    client_key: Optional[str] = None
    action: str
    client_device_id: Optional[str] = None
    sync_status: str
    conflict_data: Optional[Dict[str, Any]] = None
    synced_at: str

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "log_id": 118,
                "table_name": "tasks",
                "record_id": 42,
                "client_key": "device-a:task:7f3c",
                "action": "update",
                "client_device_id": "device-a",
                "sync_status": "conflict",
                "conflict_data": {"reason": "stale", "believedRevision": 3, "serverRevision": 4},
                "synced_at": "2024-02-28T17:05:00.000001Z",
            }
        }
    )

#
# End of sync_server_models.py
#######################################################################################################################
