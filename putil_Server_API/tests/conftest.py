# conftest.py
# Description: Shared fixtures for the putil server tests.
#
# Imports
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Generator
#
# 3rd-party Libraries
import pytest
#
# Local Imports
from putil_Server_API.app.core.DB_Management.Records_DB import RecordsDB
#
########################################################################################################################

TEST_CLIENT_ID = "test-server-pytest"


class ManualClock:
    """A settable 'now' for components that take a now_func."""

    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, delta):
        self.now = self.now + delta
        return self.now


@pytest.fixture
def records_db(tmp_path: Path) -> Generator[RecordsDB, Any, None]:
    """
    File-backed store: components hop between the event loop and worker threads, and each thread
    gets its own connection, so an in-memory database would not be shared.
    """
    database = RecordsDB(tmp_path / "records.db", client_id=TEST_CLIENT_ID)
    yield database
    database.close_all_connections()


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock(datetime(2024, 3, 1, 12, 0, 0, tzinfo=timezone.utc))

#
# End of conftest.py
########################################################################################################################
