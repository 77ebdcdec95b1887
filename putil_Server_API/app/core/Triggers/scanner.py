# scanner.py
# Description: Periodic scanner that detects due reminders, deadlines and calendar events, publishes one
#   notification per occurrence, and rolls recurring events forward to their next occurrence.
#
# Imports
import asyncio
import sqlite3
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, List, Optional, Tuple
#
# 3rd-party Libraries
from loguru import logger
#
# Local Imports
from putil_Server_API.app.core.DB_Management.Records_DB import (
    RecordsDB,
    RecordsDBError,
    format_db_timestamp,
    parse_db_timestamp,
)
from putil_Server_API.app.core.Sync.exceptions import PublishFailure, TransactionFailure
from putil_Server_API.app.core.Triggers.notifier import (
    KIND_DEADLINE_DUE,
    KIND_EVENT_DUE,
    KIND_REMINDER_DUE,
    NotificationChannel,
    TriggerNotification,
)
from putil_Server_API.app.core.Triggers.recurrence import occurrences_before
from putil_Server_API.app.core.Utils.time_utils import coerce_zoneinfo
#
########################################################################################################################
#
# Functions:

TRIGGER_REMINDER = "reminder"
TRIGGER_DEADLINE = "deadline"
TRIGGER_EVENT = "event"


@dataclass(frozen=True)
class OneShotTrigger:
    trigger_kind: str
    event_kind: str
    table: str
    due_column: str
    stamp_column: str
    extra_where: str
    message_template: str


ONE_SHOT_TRIGGERS = (
    OneShotTrigger(TRIGGER_REMINDER, KIND_REMINDER_DUE, "tasks", "reminder_time", "reminder_notified_at",
                   "is_completed = 0", "Reminder: {title}"),
    OneShotTrigger(TRIGGER_DEADLINE, KIND_DEADLINE_DUE, "tasks", "due_date", "deadline_notified_at",
                   "is_completed = 0", "Deadline reached: {title}"),
    OneShotTrigger(TRIGGER_EVENT, KIND_EVENT_DUE, "events", "event_date", "notified_at",
                   "notification_enabled = 1 AND (is_recurring = 0 OR recurrence_pattern IS NULL)",
                   "Event starting: {title}"),
)
EVENT_MESSAGE_TEMPLATE = "Event starting: {title}"


@dataclass
class ScanReport:
    scanned_at: str
    skipped: bool = False
    windows: Dict[str, Tuple[str, str]] = field(default_factory=dict)
    notifications: List[TriggerNotification] = field(default_factory=list)
    advanced: int = 0
    published: int = 0
    publish_failures: int = 0


class TriggerScanner:
    """
    Scans the record store once per interval for triggers whose due instant fell inside the elapsed window.

    Each trigger class keeps a persisted `scanned_until` high-watermark; the next window is
    [scanned_until, now), so windows are half-open and contiguous even when ticks run late or the
    process restarts. Selection, stamping/advancing and the watermark move happen in one write
    transaction; notifications are published only after it commits.
    """

    def __init__(self, db: RecordsDB, channel: NotificationChannel, interval_seconds: int = 60,
                 max_catchup: int = 24, default_timezone: str = "UTC",
                 now_func: Optional[Callable[[], datetime]] = None):
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be positive")
        self.db = db
        self.channel = channel
        self.interval = timedelta(seconds=interval_seconds)
        self.max_catchup = max(1, max_catchup)
        self.default_timezone = default_timezone
        self._now = now_func or (lambda: datetime.now(timezone.utc))
        self._tick_lock = threading.Lock()
        self._task: Optional[asyncio.Task] = None
        self.running = False
        self.ticks_completed = 0

    # --- Lifecycle ---
    async def start(self):
        if self.running:
            return
        self.running = True
        self._task = asyncio.create_task(self._run_loop())
        logger.info(f"Trigger scanner started (interval={self.interval.total_seconds():.0f}s)")

    async def stop(self):
        self.running = False
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                logger.debug("Trigger scanner task cancelled")
            self._task = None
        logger.info("Trigger scanner stopped")

    async def _run_loop(self):
        loop = asyncio.get_running_loop()
        next_deadline = loop.time()
        while self.running:
            try:
                await self.run_once()
            except TransactionFailure as e:
                # Nothing was committed; the same window is rescanned on the next tick.
                logger.error(f"Trigger scan tick failed: {e}")
            except Exception as e:
                logger.exception(f"Unexpected error in trigger scan tick: {e}")

            next_deadline += self.interval.total_seconds()
            delay = next_deadline - loop.time()
            if delay < 0:
                # The tick overran one or more periods; start the next one now instead of bunching up.
                logger.warning(f"Trigger scan tick overran its period by {-delay:.1f}s")
                next_deadline = loop.time()
                delay = 0
            await asyncio.sleep(delay)

    # --- Tick ---
    async def run_once(self, now: Optional[datetime] = None) -> ScanReport:
        """Runs a single scan tick. Returns a skipped report if another tick is still in progress."""
        now = now or self._now()
        report = await asyncio.to_thread(self._collect, now)
        if report.skipped:
            return report

        for notification in report.notifications:
            try:
                self.channel.publish(notification)
                report.published += 1
            except PublishFailure as e:
                report.publish_failures += 1
                logger.error(f"Failed to publish {notification.kind} for record {notification.record_id}: {e}")
            except Exception as e:
                report.publish_failures += 1
                logger.exception(f"Unexpected error publishing {notification.kind} for record "
                                 f"{notification.record_id}: {e}")

        self.ticks_completed += 1
        if report.notifications or report.advanced:
            logger.info(f"Trigger scan at {report.scanned_at}: {report.published} published, "
                        f"{report.publish_failures} failed, {report.advanced} recurring event(s) advanced")
        else:
            logger.debug(f"Trigger scan at {report.scanned_at}: nothing due")
        return report

    def _collect(self, now: datetime) -> ScanReport:
        now_str = format_db_timestamp(now)
        if not self._tick_lock.acquire(blocking=False):
            logger.warning("Trigger scan already in progress. Skipping.")
            return ScanReport(scanned_at=now_str, skipped=True)
        try:
            report = ScanReport(scanned_at=now_str)
            with self.db.transaction(immediate=True) as conn:
                for trigger in ONE_SHOT_TRIGGERS:
                    window = self._window(conn, trigger.trigger_kind, now)
                    report.windows[trigger.trigger_kind] = window
                    if window[0] < window[1]:
                        report.notifications.extend(self._collect_one_shot(conn, trigger, window, now_str))

                # Recurring events share the event window with one-shot events.
                window = report.windows[TRIGGER_EVENT]
                if window[0] < window[1]:
                    report.advanced = self._advance_recurring(conn, window, now, report.notifications)

                for trigger_kind, (start, end) in report.windows.items():
                    if start < end:
                        self.db.set_scan_state(conn, trigger_kind, end)
            return report
        except (RecordsDBError, sqlite3.Error) as e:
            raise TransactionFailure(f"Trigger scan rolled back: {e}") from e
        finally:
            self._tick_lock.release()

    def _window(self, conn: sqlite3.Connection, trigger_kind: str, now: datetime) -> Tuple[str, str]:
        end = format_db_timestamp(now)
        scanned_until = self.db.get_scan_state(conn, trigger_kind)
        if scanned_until is None:
            return format_db_timestamp(now - self.interval), end
        if scanned_until >= end:
            # Clock went backwards (or another scanner is ahead of us); never rescan covered time.
            return scanned_until, scanned_until
        return scanned_until, end

    def _collect_one_shot(self, conn: sqlite3.Connection, trigger: OneShotTrigger, window: Tuple[str, str],
                          now_str: str) -> List[TriggerNotification]:
        notifications = []
        rows = self.db.select_due_one_shot(conn, trigger.table, trigger.due_column, trigger.stamp_column,
                                           window[0], window[1], trigger.extra_where)
        for row in rows:
            if not self.db.mark_notified(conn, trigger.table, trigger.stamp_column, row["id"], now_str):
                logger.debug(f"{trigger.trigger_kind} for {trigger.table} id={row['id']} already claimed")
                continue
            notifications.append(TriggerNotification(
                kind=trigger.event_kind,
                record_id=row["id"],
                owner_id=row["owner_id"],
                title=row["title"],
                message=trigger.message_template.format(title=row["title"]),
                due_at=row[trigger.due_column],
            ))
        return notifications

    def _advance_recurring(self, conn: sqlite3.Connection, window: Tuple[str, str], now: datetime,
                           notifications: List[TriggerNotification]) -> int:
        rows = self.db.select_due_recurring_events(conn, window[1])
        if not rows:
            return 0
        txn_ts = self.db.next_transaction_timestamp(conn, now)
        window_start = parse_db_timestamp(window[0])
        window_end = parse_db_timestamp(window[1])
        zones: Dict[int, object] = {}
        advanced = 0
        for row in rows:
            owner_id = row["owner_id"]
            if owner_id not in zones:
                zones[owner_id] = coerce_zoneinfo(self.db.get_owner_timezone(owner_id, conn), self.default_timezone)
            try:
                occurrences, next_due, skipped = occurrences_before(
                    parse_db_timestamp(row["event_date"]), row["recurrence_pattern"], zones[owner_id],
                    window_end, self.max_catchup, since=window_start)
                new_event_date = format_db_timestamp(next_due)
            except (ValueError, OverflowError) as e:
                logger.error(f"Recurring event id={row['id']} has an unusable date "
                             f"{row['event_date']!r} ({row['recurrence_pattern']}); skipping it: {e}")
                continue

            if not self.db.advance_event_date(conn, row["id"], row["event_date"], new_event_date, txn_ts):
                logger.debug(f"Recurring event id={row['id']} moved concurrently; not notifying")
                continue
            advanced += 1
            if skipped:
                logger.warning(f"Recurring event id={row['id']} missed {skipped} occurrence(s) beyond the "
                               f"catch-up limit of {self.max_catchup}; those are not notified")
            if not row["notification_enabled"]:
                continue
            for occurrence in occurrences:
                notifications.append(TriggerNotification(
                    kind=KIND_EVENT_DUE,
                    record_id=row["id"],
                    owner_id=owner_id,
                    title=row["title"],
                    message=EVENT_MESSAGE_TEMPLATE.format(title=row["title"]),
                    due_at=format_db_timestamp(occurrence),
                ))
        return advanced

#
# End of scanner.py
########################################################################################################################
