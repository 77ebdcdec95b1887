# notification_schemas.py
# Description: Models for the notification and account settings endpoints.
#
# Imports
from typing import Dict
#
# 3rd-party Libraries
from pydantic import BaseModel, Field, ConfigDict
#
########################################################################################################################
#
# Functions:

class ScanStateResponse(BaseModel):
    scanned_until: Dict[str, str] = Field(
        default_factory=dict,
        description="Exclusive upper bound of the last committed scan window, per trigger class.")
    interval_seconds: int
    running: bool

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "scanned_until": {
                    "deadline": "2024-02-28T17:05:00.000000Z",
                    "event": "2024-02-28T17:05:00.000000Z",
                    "reminder": "2024-02-28T17:05:00.000000Z",
                },
                "interval_seconds": 60,
                "running": True,
            }
        }
    )


class TimezoneRequest(BaseModel):
    timezone: str = Field(..., min_length=1, description="IANA timezone name, e.g. 'Europe/Berlin'.")


class TimezoneResponse(BaseModel):
    timezone: str
    is_default: bool = Field(False, description="True when no timezone is stored and the server default applies.")

#
# End of notification_schemas.py
#######################################################################################################################
