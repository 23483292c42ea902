#!/usr/bin/env python3
"""
Standalone status pusher for ClawPulse.
Summarizes every agent's session records and mirrors the result into the
remote store (agents + agent_sessions tables).
Run once, or with --interval to keep pushing.
"""
import argparse
import hashlib
import json
import sys
import time
import uuid

import liveness
from store import RemoteStore, RemoteStoreError, epoch_ms_to_iso, utc_now_iso


def session_row_id(agent_dir, session_key):
    """Stable UUID for one agent session, derived from its directory and key."""
    digest = hashlib.md5(f'{agent_dir}:{session_key}'.encode('utf-8')).hexdigest()
    return str(uuid.UUID(hex=digest))


def build_session_rows(agent_dir, sessions, now_ms):
    rows = []
    for key, entry in sessions.items():
        record = entry if isinstance(entry, dict) else {}
        updated_at = liveness.session_updated_at(record)
        active = updated_at is not None and now_ms - updated_at < liveness.WORKING_WINDOW_MS
        rows.append({
            'id': session_row_id(agent_dir, key),
            'agent_id': agent_dir,
            'session_key': key,
            'kind': record.get('kind') or 'session',
            'status': 'active' if active else 'completed',
            'started_at': epoch_ms_to_iso(record.get('createdAt')) or epoch_ms_to_iso(updated_at),
            'last_active': epoch_ms_to_iso(updated_at),
            'model': record.get('model'),
            'token_count': liveness.session_tokens(record),
        })
    return rows


def push_agent(store, agent_dir, now_ms):
    """Push one agent's liveness and sessions. Returns ``(summary, pushed_sessions)``.

    The summary and the session rows come from a single read of the session file.
    """
    sessions = liveness.load_session_collection(agent_dir)
    if sessions is None:
        sessions = {}
        summary = liveness.empty_summary(agent_dir)
    else:
        summary = liveness.summarize_sessions(agent_dir, sessions, now_ms)
    current_task = json.dumps({'sessionCount': summary['sessionCount'], 'totalTokens': summary['totalTokens']})

    try:
        store.update_agent_liveness(
            agent_dir,
            summary['status'],
            epoch_ms_to_iso(summary['lastActive']),
            current_task,
        )
    except RemoteStoreError as e:
        print(f'[PUSH] Failed to update {agent_dir}: {e.message}', file=sys.stderr)

    rows = build_session_rows(agent_dir, sessions, now_ms)
    if not rows:
        return summary, 0
    try:
        store.upsert_agent_sessions(rows)
    except RemoteStoreError as e:
        print(f'[PUSH] Failed to push sessions for {agent_dir}: {e.message}', file=sys.stderr)
        return summary, 0
    return summary, len(rows)


def push_once(store, root=None):
    """Push the whole fleet once. Raises ``OSError`` if the data root cannot be listed."""
    dirs = liveness.list_agent_dirs(root)
    now_ms = liveness.now_epoch_ms()
    summaries = []
    total_sessions = 0
    for agent_dir in dirs:
        summary, pushed = push_agent(store, agent_dir, now_ms)
        summaries.append(summary)
        total_sessions += pushed
    states = ', '.join(f"{s['dir']}={s['status']}" for s in summaries)
    print(f'[PUSH] [{utc_now_iso()}] Pushed status for {len(summaries)} agents ({total_sessions} sessions): {states}')
    return summaries


def main(argv=None):
    parser = argparse.ArgumentParser(description='Push ClawPulse agent liveness to the remote store')
    parser.add_argument('--interval', type=float, default=0, help='repeat every N seconds (default: run once)')
    args = parser.parse_args(argv)

    store = RemoteStore.from_env()
    if not store.configured:
        print('[PUSH] Missing SUPABASE_URL / SUPABASE_SERVICE_ROLE_KEY', file=sys.stderr)
        return 1

    while True:
        try:
            push_once(store)
        except OSError as e:
            print(f'[PUSH] Cannot list {liveness.AGENTS_ROOT}: {e}', file=sys.stderr)
            return 1
        if args.interval <= 0:
            return 0
        time.sleep(args.interval)


if __name__ == '__main__':
    try:
        sys.exit(main())
    except KeyboardInterrupt:
        print('[PUSH] Interrupted, exiting')
