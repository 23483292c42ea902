"""Agent liveness aggregation for ClawPulse.

Reads the per-agent session collections that OpenClaw writes under
``~/.openclaw/agents/<dir>/sessions/sessions.json`` and reduces each one to a
liveness summary: session count, last activity, token usage and a derived
``working`` / ``idle`` / ``offline`` status.

Summaries are rebuilt from disk on every call. Unreadable or malformed
session data never raises: it yields the same empty summary a brand new agent
would get.
"""

from __future__ import annotations

import json
import math
import os
import time
from concurrent.futures import ThreadPoolExecutor, wait
from types import MappingProxyType
from typing import Any

AGENTS_ROOT = os.path.expanduser(os.environ.get('CLAWPULSE_AGENTS_ROOT', '~/.openclaw/agents'))
SESSIONS_RELPATH = os.path.join('sessions', 'sessions.json')

try:
    FLEET_TIMEOUT_SEC = float(os.environ.get('CLAWPULSE_FLEET_TIMEOUT_SEC', '5'))
except ValueError:
    FLEET_TIMEOUT_SEC = 5.0
FLEET_TIMEOUT_SEC = max(0.1, FLEET_TIMEOUT_SEC)

try:
    FLEET_MAX_WORKERS = int(os.environ.get('CLAWPULSE_FLEET_MAX_WORKERS', '8'))
except ValueError:
    FLEET_MAX_WORKERS = 8
FLEET_MAX_WORKERS = max(1, min(FLEET_MAX_WORKERS, 64))

WORKING_WINDOW_MS = 5 * 60 * 1000
IDLE_WINDOW_MS = 2 * 60 * 60 * 1000

STATUS_WORKING = 'working'
STATUS_IDLE = 'idle'
STATUS_OFFLINE = 'offline'

# Directory slug -> display name. Unknown directories keep their slug.
DIR_TO_NAME = MappingProxyType({
    'main': 'Aloa',
    'dev': 'Dev',
    'pm': 'PM',
    'sales': 'Aaron',
    'clawpulse': 'Pulse',
    'login': 'Login',
    'fiverr': 'Fiverr',
})


def now_epoch_ms() -> int:
    """Return the current wall-clock time in epoch milliseconds."""
    return int(time.time() * 1000)


def display_name(directory_name: str) -> str:
    return DIR_TO_NAME.get(directory_name, directory_name)


def derive_status(last_active_ms: int | None, now_ms: int | None = None) -> str:
    """Classify an agent from the age of its most recent session update.

    Buckets are closed below and open above: an age of exactly five minutes
    is ``idle`` and exactly two hours is ``offline``.
    """
    if last_active_ms is None:
        return STATUS_OFFLINE
    if now_ms is None:
        now_ms = now_epoch_ms()
    age_ms = now_ms - last_active_ms
    if age_ms < WORKING_WINDOW_MS:
        return STATUS_WORKING
    if age_ms < IDLE_WINDOW_MS:
        return STATUS_IDLE
    return STATUS_OFFLINE


def sessions_path(directory_name: str, root: str | None = None) -> str:
    return os.path.join(root or AGENTS_ROOT, directory_name, SESSIONS_RELPATH)


def _reject_constant(name: str):
    raise ValueError(f'non-finite number {name} in session data')


def load_session_collection(directory_name: str, root: str | None = None) -> dict[str, Any] | None:
    """Load an agent's session mapping, or ``None`` when it cannot be used.

    Missing files, unreadable files, bad encodings, invalid JSON (including
    NaN or Infinity literals and nesting too deep to decode) and a top-level
    value that is not an object all collapse into ``None``.
    """
    path = sessions_path(directory_name, root)
    try:
        with open(path, 'r', encoding='utf-8') as fp:
            payload = json.load(fp, parse_constant=_reject_constant)
    except (OSError, UnicodeDecodeError, ValueError, RecursionError):
        return None
    if not isinstance(payload, dict):
        return None
    return payload


def _as_count(value: Any) -> int | None:
    # bool is an int subclass; a JSON true is not a token count
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    if isinstance(value, float) and not math.isfinite(value):
        return None
    if value < 0:
        return None
    return int(value)


def session_tokens(entry: Any) -> int:
    """Effective token total of one session entry."""
    if not isinstance(entry, dict):
        return 0
    total = _as_count(entry.get('totalTokens'))
    if total is not None:
        return total
    return (_as_count(entry.get('inputTokens')) or 0) + (_as_count(entry.get('outputTokens')) or 0)


def session_updated_at(entry: Any) -> int | None:
    if not isinstance(entry, dict):
        return None
    updated_at = _as_count(entry.get('updatedAt'))
    if not updated_at:
        return None
    return updated_at


def empty_summary(directory_name: str) -> dict[str, Any]:
    """Summary for an agent with no usable session data."""
    return {
        'dir': directory_name,
        'name': display_name(directory_name),
        'sessionCount': 0,
        'lastActive': None,
        'totalTokens': 0,
        'status': STATUS_OFFLINE,
    }


def aggregate_sessions(sessions: dict[str, Any]) -> tuple[int, int | None, int]:
    """Reduce a session mapping to ``(session_count, last_active, total_tokens)``."""
    last_active = None
    total_tokens = 0
    for entry in sessions.values():
        updated_at = session_updated_at(entry)
        if updated_at is not None and (last_active is None or updated_at > last_active):
            last_active = updated_at
        total_tokens += session_tokens(entry)
    return len(sessions), last_active, total_tokens


def summarize_agent(directory_name: str, root: str | None = None, now_ms: int | None = None) -> dict[str, Any]:
    """Build the liveness summary for one agent directory. Never raises."""
    sessions = load_session_collection(directory_name, root)
    if sessions is None:
        return empty_summary(directory_name)
    return summarize_sessions(directory_name, sessions, now_ms)


def summarize_sessions(directory_name: str, sessions: dict[str, Any], now_ms: int | None = None) -> dict[str, Any]:
    """Build the liveness summary from an already loaded session mapping."""
    session_count, last_active, total_tokens = aggregate_sessions(sessions)
    return {
        'dir': directory_name,
        'name': display_name(directory_name),
        'sessionCount': session_count,
        'lastActive': last_active,
        'totalTokens': total_tokens,
        'status': derive_status(last_active, now_ms),
    }


def summarize_fleet(directory_names, root: str | None = None, timeout: float | None = None,
                    now_ms: int | None = None) -> list[dict[str, Any]]:
    """Summarize every agent concurrently, keeping the input order.

    Agents whose read fails, or has not finished when ``timeout`` seconds have
    elapsed, get the empty summary. One agent never affects another.
    """
    names = list(directory_names)
    if not names:
        return []
    if now_ms is None:
        now_ms = now_epoch_ms()
    if timeout is None:
        timeout = FLEET_TIMEOUT_SEC

    pool = ThreadPoolExecutor(max_workers=min(FLEET_MAX_WORKERS, len(names)))
    try:
        futures = [pool.submit(summarize_agent, name, root, now_ms) for name in names]
        wait(futures, timeout=timeout)
    finally:
        # Late reads are abandoned rather than joined.
        pool.shutdown(wait=False, cancel_futures=True)

    results = []
    for name, future in zip(names, futures):
        if not future.done() or future.cancelled():
            print(f'[FLEET] Summary for {name} missed the {timeout:.1f}s deadline')
            results.append(empty_summary(name))
            continue
        try:
            results.append(future.result())
        except Exception as e:
            print(f'[FLEET] Summary for {name} failed: {e}')
            results.append(empty_summary(name))
    return results


def list_agent_dirs(root: str | None = None) -> list[str]:
    """List agent directory names under the data root in filesystem order.

    Raises ``OSError`` when the root itself cannot be listed.
    """
    base = root or AGENTS_ROOT
    names = os.listdir(base)
    return [name for name in names if os.path.isdir(os.path.join(base, name))]


def read_fleet(root: str | None = None, timeout: float | None = None) -> list[dict[str, Any]]:
    """Enumerate the data root and summarize every agent found there."""
    return summarize_fleet(list_agent_dirs(root), root=root, timeout=timeout)
