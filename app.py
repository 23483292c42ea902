"""ClawPulse backend.

This module serves the ClawPulse monitoring API for a fleet of OpenClaw agents.
It combines liveness derived from on-disk session records, status pushed by
the agents themselves, and read views over the hosted store (tasks, activity,
token usage, knowledge). A background monitor rescans the fleet and pushes
changes to Socket.IO clients.
"""

from flask import Flask, Response, request
from flask_socketio import SocketIO
import threading
import time
import os
from datetime import datetime, timezone

import liveness
from store import AGENT_STATUSES, RemoteStore, RemoteStoreError, epoch_ms_to_iso, parse_iso

app = Flask(__name__)
socketio = SocketIO(app, cors_allowed_origins="*")

PUSH_TOKEN = os.environ.get('CLAWPULSE_PUSH_TOKEN', '').strip()
MONITOR_DISABLED = os.environ.get('CLAWPULSE_DISABLE_MONITOR') == '1'
try:
    FLEET_POLL_INTERVAL_SEC = float(os.environ.get('CLAWPULSE_FLEET_POLL_SEC', '5'))
except ValueError:
    FLEET_POLL_INTERVAL_SEC = 5.0
FLEET_POLL_INTERVAL_SEC = max(1.0, FLEET_POLL_INTERVAL_SEC)
try:
    DEFAULT_ACTIVITY_LIMIT = int(os.environ.get('CLAWPULSE_ACTIVITY_LIMIT', '10'))
except ValueError:
    DEFAULT_ACTIVITY_LIMIT = 10
DEFAULT_ACTIVITY_LIMIT = max(1, min(DEFAULT_ACTIVITY_LIMIT, 500))

# Last fleet snapshot seen by the background monitor.
fleet_snapshot = []
fleet_lock = threading.Lock()
FLEET_READY = False
monitor_started = False
bootstrap_lock = threading.Lock()


def get_store():
    """Build a remote store client from the environment."""
    return RemoteStore.from_env()


@app.route('/ready')
def ready():
    """Return lightweight readiness status for frontend bootstrap retries."""
    return {'ready': bool(FLEET_READY)}


@app.route('/capabilities')
def capabilities():
    """Expose runtime configuration and currently tracked agent count."""
    with fleet_lock:
        tracked_agents = len(fleet_snapshot)
    return {
        'ready': bool(FLEET_READY),
        'tracked_agents': tracked_agents,
        'agents_root': liveness.AGENTS_ROOT,
        'store_configured': get_store().configured,
        'push_auth': bool(PUSH_TOKEN),
        'fleet': {
            'poll_interval_sec': FLEET_POLL_INTERVAL_SEC,
            'timeout_sec': liveness.FLEET_TIMEOUT_SEC,
            'monitor': not MONITOR_DISABLED,
        },
    }


@app.route('/api/agents')
def agents():
    """Return one liveness summary per agent directory under the data root."""
    try:
        return liveness.read_fleet()
    except OSError as e:
        print(f'[API] Failed to read agents directory {liveness.AGENTS_ROOT}: {e}')
        return {'error': 'Failed to read agent data'}, 500


@app.route('/api/agents/<agent_dir>')
def agent_detail(agent_dir):
    """Return the liveness summary of one agent directory."""
    if agent_dir.startswith('.'):
        return {'error': 'agent_not_found', 'dir': agent_dir}, 404
    return liveness.summarize_agent(agent_dir)


def validate_status_push(body):
    """Check a status push body. Returns ``(fields, error_message)``."""
    if not isinstance(body, dict):
        return None, 'Invalid JSON body'
    agent_id = body.get('agent_id')
    status = body.get('status')
    if not agent_id:
        return None, 'agent_id is required'
    if not isinstance(agent_id, str):
        return None, 'agent_id must be a string'
    if not status:
        return None, 'status is required'
    if status not in AGENT_STATUSES:
        return None, f"status must be one of: {', '.join(AGENT_STATUSES)}"

    current_task = body.get('current_task')
    if current_task is not None and not isinstance(current_task, str):
        return None, 'current_task must be a string'
    last_activity = body.get('last_activity')
    if last_activity is not None and parse_iso(last_activity) is None:
        return None, 'last_activity must be an ISO-8601 timestamp'

    return {
        'agent_id': agent_id,
        'status': status,
        'current_task': current_task,
        'last_activity': last_activity,
    }, None


def push_authorized():
    if not PUSH_TOKEN:
        return True
    header = request.headers.get('Authorization', '')
    token = header[7:].strip() if header.startswith('Bearer ') else ''
    return token == PUSH_TOKEN


@app.route('/api/agent-status', methods=['POST'])
def push_agent_status():
    """Accept a status pushed by an agent and upsert it into the remote store."""
    if not push_authorized():
        return {'error': 'Unauthorized'}, 401

    fields, error = validate_status_push(request.get_json(silent=True))
    if error:
        return {'error': error}, 400

    try:
        get_store().upsert_agent_status(
            fields['agent_id'],
            fields['status'],
            current_task=fields['current_task'],
            last_activity=fields['last_activity'],
        )
    except RemoteStoreError as e:
        print(f'[API] Store error updating agent status for {fields["agent_id"]}: {e.message}')
        return {'error': e.message}, 500

    return {'ok': True, 'agent_id': fields['agent_id'], 'status': fields['status']}


@app.route('/api/agent-status', methods=['GET'])
def agent_status_usage():
    """Describe the status push request body."""
    return {
        'endpoint': '/api/agent-status',
        'method': 'POST',
        'body': {
            'agent_id': 'string (required), e.g. "main", "dev", "pm"',
            'status': f"string (required), one of: {', '.join(AGENT_STATUSES)}",
            'current_task': 'string (optional), description of current task',
            'last_activity': 'string (optional), ISO timestamp of last activity',
        },
    }


def store_response(label, fetch):
    """Run a remote store read and shape the Flask response."""
    try:
        return {label: fetch(get_store())}
    except RemoteStoreError as e:
        print(f'[API] Store error fetching {label}: {e.message}')
        return {'error': e.message}, 500


def date_args():
    return request.args.get('from') or None, request.args.get('to') or None


@app.route('/api/live-status')
def live_status():
    """Statuses pushed by agents, kept separate from the session-derived fleet view."""
    return store_response('agents', lambda store: store.fetch_agent_live_status())


@app.route('/api/store/agents')
def store_agents():
    return store_response('agents', lambda store: store.fetch_agents())


@app.route('/api/tasks')
def tasks():
    date_from, date_to = date_args()
    status = request.args.get('status') or None
    return store_response('tasks', lambda store: store.fetch_tasks(date_from, date_to, status=status))


@app.route('/api/activity')
def activity():
    date_from, date_to = date_args()
    limit = request.args.get('limit', type=int) or DEFAULT_ACTIVITY_LIMIT
    limit = max(1, min(limit, 500))
    return store_response('activity', lambda store: store.fetch_activity_log(limit, date_from, date_to))


@app.route('/api/activity/sparklines')
def activity_sparklines():
    return store_response('sparklines', lambda store: store.fetch_agent_sparklines())


@app.route('/api/knowledge')
def knowledge():
    category = request.args.get('category') or None
    return store_response('knowledge', lambda store: store.fetch_knowledge(category))


@app.route('/api/usage')
def usage():
    date_from, date_to = date_args()
    limit = request.args.get('limit', type=int) or 100
    limit = max(1, min(limit, 1000))
    return store_response('usage', lambda store: store.fetch_token_usage(limit, date_from, date_to))


@app.route('/api/usage/by-agent')
def usage_by_agent():
    date_from, date_to = date_args()
    return store_response('usage', lambda store: store.fetch_token_stats_by_agent(date_from, date_to))


@app.route('/api/usage/daily')
def usage_daily():
    date_from, date_to = date_args()
    return store_response('usage', lambda store: store.fetch_daily_token_stats(date_from, date_to))


@app.route('/api/usage/summary')
def usage_summary():
    date_from, date_to = date_args()
    return store_response('summary', lambda store: store.fetch_token_summary(date_from, date_to))


def csv_escape(value):
    """Quote a CSV cell when it contains a comma, a quote or a newline."""
    text = '' if value is None else str(value)
    if ',' in text or '"' in text or '\n' in text:
        return '"' + text.replace('"', '""') + '"'
    return text


def build_csv(headers, rows):
    lines = [','.join(csv_escape(h) for h in headers)]
    lines.extend(','.join(csv_escape(cell) for cell in row) for row in rows)
    return '\n'.join(lines)


def csv_response(filename, headers, rows):
    stamp = datetime.now(timezone.utc).strftime('%Y-%m-%d')
    response = Response(build_csv(headers, rows), mimetype='text/csv')
    response.headers['Content-Type'] = 'text/csv; charset=utf-8'
    response.headers['Content-Disposition'] = f'attachment; filename="{filename}-{stamp}.csv"'
    return response


@app.route('/api/export/agents.csv')
def export_agents():
    try:
        fleet = liveness.read_fleet()
    except OSError as e:
        print(f'[API] Failed to read agents directory {liveness.AGENTS_ROOT}: {e}')
        return {'error': 'Failed to read agent data'}, 500
    rows = [
        [a['name'], a['dir'], a['status'], a['sessionCount'], a['totalTokens'], epoch_ms_to_iso(a['lastActive']) or '']
        for a in fleet
    ]
    return csv_response('agents', ['Agent', 'Directory', 'Status', 'Sessions', 'Total Tokens', 'Last Active'], rows)


@app.route('/api/export/tasks.csv')
def export_tasks():
    date_from, date_to = date_args()
    try:
        items = get_store().fetch_tasks(date_from, date_to)
    except RemoteStoreError as e:
        print(f'[API] Store error exporting tasks: {e.message}')
        return {'error': e.message}, 500
    rows = [
        [t.get('title'), t.get('status'), t.get('priority'), t.get('project'), t.get('assigned_agent'), t.get('created_at')]
        for t in items
    ]
    return csv_response('tasks', ['Title', 'Status', 'Priority', 'Project', 'Assigned Agent', 'Created At'], rows)


@app.route('/api/export/usage.csv')
def export_usage():
    date_from, date_to = date_args()
    try:
        items = get_store().fetch_token_usage(1000, date_from, date_to)
    except RemoteStoreError as e:
        print(f'[API] Store error exporting usage: {e.message}')
        return {'error': e.message}, 500
    rows = [
        [u.get('agent_name'), u.get('model'), u.get('total_tokens'), u.get('cost_usd'), u.get('recorded_at')]
        for u in items
    ]
    return csv_response('usage', ['Agent', 'Model', 'Total Tokens', 'Cost (USD)', 'Recorded At'], rows)


def refresh_fleet_snapshot():
    """Rescan the fleet and broadcast it when it differs from the last scan."""
    global FLEET_READY
    fleet = liveness.read_fleet()
    with fleet_lock:
        changed = fleet != fleet_snapshot
        if changed:
            fleet_snapshot[:] = fleet
        FLEET_READY = True
    if changed:
        socketio.emit('fleet', fleet)
    return changed


def fleet_monitor():  # pragma: no cover
    """Background loop keeping the fleet snapshot current."""
    print(f'[FLEET] Monitor started on {liveness.AGENTS_ROOT} every {FLEET_POLL_INTERVAL_SEC:.0f}s')
    while True:
        try:
            refresh_fleet_snapshot()
        except OSError as e:
            print(f'[FLEET] Cannot list {liveness.AGENTS_ROOT}: {e}')
        except Exception as e:
            print(f'[FLEET] monitor error: {e}')
        time.sleep(FLEET_POLL_INTERVAL_SEC)


def ensure_monitor_started():
    """Thread-safe bootstrap for the fleet monitor."""
    global monitor_started
    if MONITOR_DISABLED:
        return False
    with bootstrap_lock:
        if monitor_started:
            return False
        monitor_started = True
    threading.Thread(target=fleet_monitor, daemon=True).start()
    return True


@app.before_request
def bootstrap_before_request():
    """Ensure the fleet monitor is running before handling requests."""
    ensure_monitor_started()


@socketio.on('connect')
def handle_connect():  # pragma: no cover
    """Push the current fleet snapshot to a new websocket client."""
    print('[SOCKET] Client connected')
    sid = request.sid
    ensure_monitor_started()
    with fleet_lock:
        data = list(fleet_snapshot)
    if not FLEET_READY:
        socketio.emit('fleet_pending', {'msg': 'server_not_ready'}, room=sid)
        return
    socketio.emit('fleet', data, room=sid)


@socketio.on('disconnect')
def handle_disconnect():  # pragma: no cover
    """Log websocket disconnect events."""
    print('[SOCKET] Client disconnected')


if __name__ == '__main__':  # pragma: no cover
    ensure_monitor_started()
    port = int(os.environ.get('CLAWPULSE_PORT', '5050'))
    socketio.run(app, host='0.0.0.0', port=port, debug=False, allow_unsafe_werkzeug=True)
