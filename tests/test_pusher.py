import json
import uuid

import pusher
from conftest import write_sessions
from store import RemoteStoreError

NOW_MS = 1_760_000_000_000


class RecordingStore:
    configured = True

    def __init__(self, fail_update=(), fail_sessions=()):
        self.fail_update = set(fail_update)
        self.fail_sessions = set(fail_sessions)
        self.updates = []
        self.session_batches = []

    def update_agent_liveness(self, agent_id, status, last_activity, current_task):
        if agent_id in self.fail_update:
            raise RemoteStoreError("update failed")
        self.updates.append((agent_id, status, last_activity, json.loads(current_task)))

    def upsert_agent_sessions(self, rows):
        if rows and rows[0]["agent_id"] in self.fail_sessions:
            raise RemoteStoreError("upsert failed")
        self.session_batches.append(rows)


def test_session_row_id_is_stable_uuid():
    first = pusher.session_row_id("main", "agent:main:slack")
    assert first == pusher.session_row_id("main", "agent:main:slack")
    assert first != pusher.session_row_id("dev", "agent:main:slack")
    assert str(uuid.UUID(first)) == first


def test_build_session_rows_maps_fields():
    rows = pusher.build_session_rows("main", {
        "live": {"updatedAt": NOW_MS - 60_000, "createdAt": NOW_MS - 600_000, "model": "opus", "kind": "direct", "totalTokens": 10},
        "old": {"updatedAt": NOW_MS - 3_600_000, "inputTokens": 4, "outputTokens": 6},
        "bare": "junk",
    }, NOW_MS)

    by_key = {row["session_key"]: row for row in rows}
    assert by_key["live"]["status"] == "active"
    assert by_key["live"]["kind"] == "direct"
    assert by_key["live"]["model"] == "opus"
    assert by_key["live"]["token_count"] == 10
    assert by_key["live"]["started_at"] < by_key["live"]["last_active"]
    assert by_key["old"]["status"] == "completed"
    assert by_key["old"]["kind"] == "session"
    assert by_key["old"]["token_count"] == 10
    assert by_key["old"]["started_at"] == by_key["old"]["last_active"]
    assert by_key["bare"]["started_at"] is None
    assert by_key["bare"]["last_active"] is None
    assert by_key["bare"]["status"] == "completed"


def test_build_session_rows_tolerates_out_of_range_timestamps():
    rows = pusher.build_session_rows("main", {"far": {"updatedAt": 10**20, "createdAt": 10**20}}, NOW_MS)
    assert rows[0]["started_at"] is None
    assert rows[0]["last_active"] is None


def test_push_agent_reads_session_file_once(agents_root, monkeypatch):
    write_sessions(agents_root, "dev", {"s1": {"updatedAt": NOW_MS, "totalTokens": 4}})
    real_load = pusher.liveness.load_session_collection
    calls = []

    def load_then_rewrite(name, root=None):
        calls.append(name)
        sessions = real_load(name, root)
        write_sessions(agents_root, name, {"s1": {"totalTokens": 4}, "s2": {"totalTokens": 6}})
        return sessions

    monkeypatch.setattr(pusher.liveness, "load_session_collection", load_then_rewrite)
    store = RecordingStore()

    summary, pushed = pusher.push_agent(store, "dev", NOW_MS)

    assert calls == ["dev"]
    assert summary["sessionCount"] == 1
    assert pushed == 1
    assert store.updates[0][3] == {"sessionCount": 1, "totalTokens": 4}
    assert [row["session_key"] for row in store.session_batches[0]] == ["s1"]


def test_push_once_updates_every_agent_and_continues_past_failures(agents_root):
    write_sessions(agents_root, "main", {"s1": {"updatedAt": NOW_MS, "totalTokens": 5}})
    write_sessions(agents_root, "dev", {"s1": {"totalTokens": 1}, "s2": {"totalTokens": 2}})
    (agents_root / "pm").mkdir()
    store = RecordingStore(fail_update={"main"}, fail_sessions={"dev"})

    summaries = pusher.push_once(store)

    assert sorted(s["dir"] for s in summaries) == ["dev", "main", "pm"]
    updated = {row[0]: row for row in store.updates}
    assert set(updated) == {"dev", "pm"}
    assert updated["dev"][3] == {"sessionCount": 2, "totalTokens": 3}
    assert updated["pm"][1] == "offline"
    assert updated["pm"][2] is None
    assert [batch[0]["agent_id"] for batch in store.session_batches] == ["main"]


def test_main_exits_nonzero_without_configuration(monkeypatch):
    for name in ("SUPABASE_URL", "NEXT_PUBLIC_SUPABASE_URL", "SUPABASE_SERVICE_ROLE_KEY", "SUPABASE_ANON_KEY", "NEXT_PUBLIC_SUPABASE_ANON_KEY"):
        monkeypatch.delenv(name, raising=False)
    assert pusher.main([]) == 1


def test_main_runs_once_and_reports_missing_root(monkeypatch, tmp_path):
    store = RecordingStore()
    monkeypatch.setattr(pusher.RemoteStore, "from_env", classmethod(lambda cls: store))

    monkeypatch.setattr(pusher.liveness, "AGENTS_ROOT", str(tmp_path))
    assert pusher.main([]) == 0

    monkeypatch.setattr(pusher.liveness, "AGENTS_ROOT", str(tmp_path / "missing"))
    assert pusher.main([]) == 1
