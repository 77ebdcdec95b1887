# time_utils.py
# Description: Timezone helpers shared by the sync coordinator and the trigger scanner.
#
# Imports
from datetime import datetime, timezone, tzinfo
from typing import Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError
#
# 3rd-party Libraries
from loguru import logger
#
########################################################################################################################
#
# Functions:


def is_valid_timezone(name: Optional[str]) -> bool:
    if not name:
        return False
    try:
        ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError, OSError):
        return False
    return True


def coerce_zoneinfo(name: Optional[str], fallback: str = "UTC") -> tzinfo:
    """Returns the named zone, or the fallback zone (UTC as last resort) if the name is unknown."""
    for candidate in (name, fallback):
        if not candidate:
            continue
        try:
            return ZoneInfo(candidate)
        except (ZoneInfoNotFoundError, ValueError, OSError):
            logger.warning(f"Unknown timezone '{candidate}', falling back.")
    return timezone.utc


def localize(value: datetime, zone: tzinfo) -> datetime:
    """Attaches `zone` to a naive wall-clock value; aware values are returned unchanged."""
    if value.tzinfo is None:
        return value.replace(tzinfo=zone)
    return value

#
# End of time_utils.py
########################################################################################################################
