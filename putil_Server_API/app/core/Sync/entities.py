# Sync/entities.py
# Description: Registry of syncable entity types: which table backs each one, how client payload fields
#   are coerced into column values, and which fields are temporal triggers.
#
# Imports
import json
from dataclasses import dataclass, field
from datetime import date, datetime, timezone, tzinfo
from typing import Any, Callable, Dict, Tuple
#
# 3rd-party Libraries
from loguru import logger
#
# Local Imports
from putil_Server_API.app.core.DB_Management.Records_DB import InputError, format_db_timestamp
from putil_Server_API.app.core.Sync.exceptions import UnknownEntityError
from putil_Server_API.app.core.Utils.time_utils import localize
#
#######################################################################################################################
#
# Functions:

# Coercer signature: (field_name, raw_value, owner_zone) -> column value
Coercer = Callable[[str, Any, tzinfo], Any]

SQLITE_INT_MIN, SQLITE_INT_MAX = -2 ** 63, 2 ** 63 - 1
MIN_YEAR, MAX_YEAR = 1000, 9999


def _text(name, value, zone):
    if value is None:
        return None
    if not isinstance(value, str):
        raise InputError(f"'{name}' must be a string")
    return value


def _required(coercer: "Coercer") -> "Coercer":
    def coerce(name, value, zone):
        if value is None:
            raise InputError(f"'{name}' cannot be null")
        return coercer(name, value, zone)
    return coerce


def _integer(name, value, zone):
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, int):
        raise InputError(f"'{name}' must be an integer")
    if not SQLITE_INT_MIN <= value <= SQLITE_INT_MAX:
        raise InputError(f"'{name}' is outside the 64-bit integer range")
    return value


def _number(name, value, zone):
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise InputError(f"'{name}' must be a number")
    try:
        return float(value)
    except OverflowError as e:
        raise InputError(f"'{name}' is too large") from e


def _boolean(name, value, zone):
    if not isinstance(value, bool):
        raise InputError(f"'{name}' must be a boolean")
    return int(value)


def _timestamp(name, value, zone):
    """Instants are stored as UTC; a naive value is wall-clock time in the owner's zone."""
    if value is None:
        return None
    if not isinstance(value, str):
        raise InputError(f"'{name}' must be an ISO-8601 string")
    try:
        naive_or_aware = datetime.fromisoformat(value.strip().replace('Z', '+00:00'))
    except ValueError as e:
        raise InputError(f"'{name}' is not a valid ISO-8601 timestamp: {value!r}") from e
    try:
        instant = localize(naive_or_aware, zone).astimezone(timezone.utc)
    except (OverflowError, ValueError) as e:
        raise InputError(f"'{name}' is out of range: {value!r}") from e
    # The stored format is fixed-width only for four-digit years.
    if not MIN_YEAR <= instant.year <= MAX_YEAR:
        raise InputError(f"'{name}' must fall between years {MIN_YEAR} and {MAX_YEAR}: {value!r}")
    return format_db_timestamp(instant)


def _calendar_date(name, value, zone):
    if value is None:
        return None
    try:
        return date.fromisoformat(str(value)).isoformat()
    except ValueError as e:
        raise InputError(f"'{name}' must be a YYYY-MM-DD date") from e


def _json_list(name, value, zone):
    if value is None:
        return None
    if not isinstance(value, list):
        raise InputError(f"'{name}' must be a list")
    return json.dumps(value)


def _one_of(*choices: str) -> Coercer:
    def coerce(name, value, zone):
        if value is None:
            return None
        if value not in choices:
            raise InputError(f"'{name}' must be one of {', '.join(choices)}")
        return value
    return coerce


@dataclass(frozen=True)
class EntitySpec:
    entity_type: str
    table: str
    fields: Dict[str, Coercer]
    # trigger field -> one-shot notification stamp column cleared when the trigger field changes
    trigger_stamps: Dict[str, str] = field(default_factory=dict)
    bool_fields: Tuple[str, ...] = ()
    json_fields: Tuple[str, ...] = ()

    def coerce_payload(self, payload: Dict[str, Any], zone: tzinfo) -> Dict[str, Any]:
        """
        Converts a client payload to column values. Unknown keys (including any payload-level
        `deleted` flag) are ignored; deletion is only expressed by the mutation itself.

        Raises:
            InputError: A known field has a value of the wrong type.
        """
        values = {}
        for name, raw in payload.items():
            coercer = self.fields.get(name)
            if coercer is None:
                logger.trace(f"Ignoring unknown {self.entity_type} payload field '{name}'")
                continue
            values[name] = coercer(name, raw, zone)
        return values

    def row_to_entity(self, row: Dict[str, Any]) -> Dict[str, Any]:
        """Renders a stored row in the wire shape shared by accepted, rejected and serverChanges entries."""
        payload = {}
        for name in self.fields:
            value = row.get(name)
            if name in self.bool_fields:
                value = bool(value)
            elif name in self.json_fields and value is not None:
                value = json.loads(value)
            payload[name] = value
        return {
            "id": row["id"],
            "clientKey": row["client_key"],
            "revision": row["revision"],
            "changedAt": row["changed_at"],
            "createdAt": row["created_at"],
            "deleted": bool(row["deleted"]),
            "deletedAt": row["deleted_at"],
            "payload": payload,
        }

    def cleared_stamps(self, new_values: Dict[str, Any], current_row: Dict[str, Any]) -> Tuple[str, ...]:
        """Stamps to reset because the write moves a trigger to a different instant."""
        return tuple(
            stamp for trigger_field, stamp in self.trigger_stamps.items()
            if trigger_field in new_values and new_values[trigger_field] != current_row.get(trigger_field)
        )


ENTITY_CONFIG: Dict[str, EntitySpec] = {
    "tasks": EntitySpec(
        entity_type="tasks",
        table="tasks",
        fields={
            "title": _required(_text),
            "description": _text,
            "is_completed": _boolean,
            "completed_at": _timestamp,
            "category_id": _integer,
            "priority": _required(_one_of("low", "medium", "high")),
            "tags": _json_list,
            "position": _required(_integer),
            "due_date": _timestamp,
            "reminder_time": _timestamp,
        },
        trigger_stamps={"reminder_time": "reminder_notified_at", "due_date": "deadline_notified_at"},
        bool_fields=("is_completed",),
        json_fields=("tags",),
    ),
    "transactions": EntitySpec(
        entity_type="transactions",
        table="transactions",
        fields={
            "amount": _required(_number),
            "type": _required(_one_of("income", "expense")),
            "category_id": _integer,
            "description": _text,
            "date": _calendar_date,
            "payment_method": _text,
            "receipt_image": _text,
        },
    ),
    "events": EntitySpec(
        entity_type="events",
        table="events",
        fields={
            "title": _required(_text),
            "description": _text,
            "event_date": _timestamp,
            "event_type": _text,
            "color": _text,
            "icon": _text,
            "image_path": _text,
            "is_recurring": _boolean,
            "recurrence_pattern": _one_of("daily", "weekly", "monthly", "yearly"),
            "notification_enabled": _boolean,
            "notification_times": _json_list,
        },
        trigger_stamps={"event_date": "notified_at"},
        bool_fields=("is_recurring", "notification_enabled"),
        json_fields=("notification_times",),
    ),
}


def get_entity_spec(entity_type: str) -> EntitySpec:
    spec = ENTITY_CONFIG.get(entity_type)
    if spec is None:
        logger.error(f"Unknown entity type encountered: {entity_type}")
        raise UnknownEntityError(f"Unknown entity type: {entity_type}")
    return spec
