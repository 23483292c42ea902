"""
Shared fixtures for the ClawPulse test suite.
"""
import io
import json
import os

import pytest

# The fleet monitor thread must not start while the Flask test client runs.
os.environ.setdefault("CLAWPULSE_DISABLE_MONITOR", "1")
os.environ.pop("CLAWPULSE_PUSH_TOKEN", None)


def write_sessions(root, agent_dir, sessions):
    """Write a sessions.json document for one agent under ``root``."""
    sessions_dir = root / agent_dir / "sessions"
    sessions_dir.mkdir(parents=True, exist_ok=True)
    path = sessions_dir / "sessions.json"
    if isinstance(sessions, (bytes, str)):
        path.write_bytes(sessions if isinstance(sessions, bytes) else sessions.encode("utf-8"))
    else:
        path.write_text(json.dumps(sessions), encoding="utf-8")
    return path


class FakeHeaders:
    def get_content_charset(self):
        return "utf-8"


class FakeResponse:
    """Minimal stand-in for the object returned by ``urlopen``."""

    def __init__(self, payload, status=200):
        if isinstance(payload, (dict, list)):
            payload = json.dumps(payload)
        self._body = io.BytesIO((payload or "").encode("utf-8"))
        self.status = status
        self.headers = FakeHeaders()

    def read(self):
        return self._body.read()

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False


@pytest.fixture
def agents_root(tmp_path, monkeypatch):
    """Point the liveness aggregator at an empty temporary data root."""
    import liveness

    root = tmp_path / "agents"
    root.mkdir()
    monkeypatch.setattr(liveness, "AGENTS_ROOT", str(root))
    return root
