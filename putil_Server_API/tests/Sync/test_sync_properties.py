# test_sync_properties.py
# Description: Property tests over random mutation sequences: revisions never go backwards, tombstones
#   never come back, and a clientKey maps to at most one record.
#
# Imports
import tempfile
from pathlib import Path
#
# 3rd-party Libraries
from hypothesis import given, settings, strategies as st
#
# Local Imports
from putil_Server_API.app.core.DB_Management.Records_DB import RecordsDB
from putil_Server_API.app.core.Sync.coordinator import SyncCoordinator
from putil_Server_API.app.core.Sync.models import ClientMutation
#
########################################################################################################################

OWNER = 1
KEYS = ("k0", "k1", "k2")

st_step = st.fixed_dictionaries({
    "key": st.sampled_from(KEYS),
    "kind": st.sampled_from(("create", "update", "delete")),
    # How far the device's belief is from the revision it last saw.
    "skew": st.integers(min_value=-2, max_value=1),
    "title": st.text(min_size=1, max_size=20),
})


def _mutation(step, seen):
    known = seen.get(step["key"])
    if step["kind"] == "create" or known is None:
        return ClientMutation(client_key=step["key"], payload={"title": step["title"]},
                              deleted=step["kind"] == "delete")
    believed = max(0, known["revision"] + step["skew"])
    return ClientMutation(client_key=step["key"], believed_revision=believed, record_id=known["id"],
                          deleted=step["kind"] == "delete",
                          payload={} if step["kind"] == "delete" else {"title": step["title"]})


@settings(max_examples=40, deadline=None)
@given(batches=st.lists(st.lists(st_step, min_size=1, max_size=4), min_size=1, max_size=6))
def test_revisions_monotonic_and_tombstones_permanent(batches):
    with tempfile.TemporaryDirectory() as tmp:
        db = RecordsDB(Path(tmp) / "props.db", client_id="props")
        try:
            coordinator = SyncCoordinator(db)
            seen = {}
            last_revision = {}
            tombstoned = set()

            for batch in batches:
                result = coordinator.reconcile(OWNER, "tasks", None, [_mutation(s, seen) for s in batch])

                # Every accepted entity and every rejection's server state is the device's new view.
                for entity in result.accepted:
                    seen[entity["clientKey"]] = entity
                for rejected in result.rejected:
                    if rejected.server_state is not None:
                        seen[rejected.client_key] = rejected.server_state

                rows = db.list_changes_since(db.get_connection(), "tasks", OWNER, None)
                assert len({r["client_key"] for r in rows}) == len(rows)
                for row in rows:
                    key = row["client_key"]
                    assert row["revision"] >= last_revision.get(key, 1)
                    last_revision[key] = row["revision"]
                    if key in tombstoned:
                        assert row["deleted"] == 1
                    if row["deleted"]:
                        tombstoned.add(key)
        finally:
            db.close_all_connections()


@settings(max_examples=25, deadline=None)
@given(replays=st.integers(min_value=1, max_value=5), title=st.text(min_size=1, max_size=20))
def test_replayed_create_never_duplicates(replays, title):
    with tempfile.TemporaryDirectory() as tmp:
        db = RecordsDB(Path(tmp) / "replay.db", client_id="props")
        try:
            coordinator = SyncCoordinator(db)
            ids = set()
            for _ in range(replays + 1):
                result = coordinator.reconcile(OWNER, "tasks", None,
                                               [ClientMutation(client_key="same", payload={"title": title})])
                ids.update(e["id"] for e in result.accepted)
                ids.update(r.server_state["id"] for r in result.rejected if r.server_state)
            assert len(ids) == 1
            assert len(db.list_changes_since(db.get_connection(), "tasks", OWNER, None)) == 1
        finally:
            db.close_all_connections()

#
# End of test_sync_properties.py
########################################################################################################################
