"""Remote store client for ClawPulse.

The hosted backend is a Supabase project; this module talks to its PostgREST
HTTP API directly. Every failure is raised as ``RemoteStoreError`` so callers
can tell a store outage apart from a table that is simply empty.
"""

from __future__ import annotations

import json
import os
from datetime import datetime, timedelta, timezone
from typing import Any
from urllib.error import HTTPError, URLError
from urllib.parse import urlencode
from urllib.request import Request, urlopen

try:
    STORE_TIMEOUT_SEC = float(os.environ.get('CLAWPULSE_STORE_TIMEOUT_SEC', '10'))
except ValueError:
    STORE_TIMEOUT_SEC = 10.0

AGENT_STATUSES = ('working', 'idle', 'offline', 'unknown')


class RemoteStoreError(Exception):
    """Raised when the remote store is unreachable, misconfigured or rejects a query."""

    def __init__(self, message, status_code=None, details=''):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.details = details


def utc_now_iso() -> str:
    """Return current UTC time as ISO-8601 string with milliseconds."""
    return datetime.now(timezone.utc).strftime('%Y-%m-%dT%H:%M:%S.%f')[:-3] + 'Z'


def parse_iso(value: Any) -> datetime | None:
    """Parse an ISO-8601 timestamp into an aware datetime, or ``None``."""
    if not isinstance(value, str):
        return None
    text = value.strip()
    if not text:
        return None
    if text.endswith('Z'):
        text = text[:-1] + '+00:00'
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def format_time_ago(then: datetime, now: datetime | None = None) -> str:
    """Render the distance from ``then`` to ``now`` as a short activity label."""
    if now is None:
        now = datetime.now(timezone.utc)
    diff_ms = (now - then).total_seconds() * 1000
    if diff_ms < 60_000:
        return 'Just now'
    if diff_ms < 3_600_000:
        return f'{int(diff_ms // 60_000)} min ago'
    if diff_ms < 86_400_000:
        return f'{int(diff_ms // 3_600_000)} hr ago'
    return f'{int(diff_ms // 86_400_000)}d ago'


def date_range_filters(column, date_from=None, date_to=None):
    """PostgREST filters bounding ``column`` to whole UTC days."""
    filters = []
    if date_from:
        filters.append((column, f'gte.{date_from}T00:00:00.000Z'))
    if date_to:
        filters.append((column, f'lte.{date_to}T23:59:59.999Z'))
    return filters


def _agent_name(row):
    agent = row.get('agent') if isinstance(row.get('agent'), dict) else {}
    return agent.get('name') or row.get('agent_id')


def _as_float(value):
    try:
        return float(value)
    except (TypeError, ValueError):
        return 0.0


def _as_int(value):
    try:
        return int(value)
    except (TypeError, ValueError):
        return 0


class RemoteStore:
    """Thin PostgREST client bound to one Supabase project."""

    def __init__(self, url, key, timeout=None):
        self.url = (url or '').rstrip('/')
        self.key = key or ''
        self.timeout = STORE_TIMEOUT_SEC if timeout is None else timeout

    @classmethod
    def from_env(cls):
        url = os.environ.get('SUPABASE_URL') or os.environ.get('NEXT_PUBLIC_SUPABASE_URL') or ''
        key = (
            os.environ.get('SUPABASE_SERVICE_ROLE_KEY')
            or os.environ.get('SUPABASE_ANON_KEY')
            or os.environ.get('NEXT_PUBLIC_SUPABASE_ANON_KEY')
            or ''
        )
        return cls(url, key)

    @property
    def configured(self):
        return bool(self.url and self.key)

    def _headers(self, extra=None):
        headers = {
            'apikey': self.key,
            'Authorization': f'Bearer {self.key}',
            'Accept': 'application/json',
        }
        if extra:
            headers.update(extra)
        return headers

    def _request(self, method, table, params=None, body=None, headers=None):
        if not self.configured:
            raise RemoteStoreError('remote store is not configured')

        query = urlencode(params or [], doseq=True)
        url = f"{self.url}/rest/v1/{table}{'?' + query if query else ''}"
        data = None
        if body is not None:
            data = json.dumps(body).encode('utf-8')
        request = Request(url=url, data=data, method=method, headers=self._headers(headers))
        if data is not None:
            request.add_header('Content-Type', 'application/json')

        try:
            with urlopen(request, timeout=self.timeout) as response:
                charset = response.headers.get_content_charset() or 'utf-8'
                payload = response.read().decode(charset)
        except HTTPError as exc:
            details = ''
            try:
                details = exc.read().decode('utf-8', errors='replace')
            except OSError:
                details = ''
            message = f'HTTP error {exc.code}'
            try:
                parsed = json.loads(details) if details else {}
                if isinstance(parsed, dict) and parsed.get('message'):
                    message = str(parsed['message'])
            except ValueError:
                pass
            print(f'[STORE] {method} {table} failed: {message}')
            raise RemoteStoreError(message, status_code=exc.code, details=details) from exc
        except URLError as exc:
            print(f'[STORE] {method} {table} connection error: {exc.reason}')
            raise RemoteStoreError('Connection error', details=str(exc.reason)) from exc
        except OSError as exc:
            print(f'[STORE] {method} {table} I/O error: {exc}')
            raise RemoteStoreError('Connection error', details=str(exc)) from exc

        if not payload:
            return None
        try:
            return json.loads(payload)
        except ValueError as exc:
            raise RemoteStoreError('Invalid JSON response', details=str(exc)) from exc

    def select(self, table, columns='*', filters=None, order=None, limit=None, offset=None):
        """Read rows. ``filters`` is a list of ``(column, 'op.value')`` pairs."""
        params = [('select', columns)]
        params.extend(filters or [])
        if order:
            params.append(('order', order))
        if limit is not None:
            params.append(('limit', str(limit)))
        if offset:
            params.append(('offset', str(offset)))
        rows = self._request('GET', table, params=params)
        return rows if isinstance(rows, list) else []

    def upsert(self, table, rows, on_conflict):
        self._request(
            'POST',
            table,
            params=[('on_conflict', on_conflict)],
            body=rows,
            headers={'Prefer': 'resolution=merge-duplicates,return=minimal'},
        )

    def update(self, table, values, filters):
        self._request(
            'PATCH',
            table,
            params=list(filters),
            body=values,
            headers={'Prefer': 'return=minimal'},
        )

    # -- agents ---------------------------------------------------------------

    def fetch_agents(self):
        return self.select('agents', order='created_at.asc')

    def upsert_agent_status(self, agent_id, status, current_task=None, last_activity=None):
        """Write one pushed status row keyed by agent id, stamped with server time."""
        row = {
            'id': agent_id,
            'status': status,
            'updated_at': utc_now_iso(),
        }
        if current_task is not None:
            row['current_task'] = current_task
        if last_activity is not None:
            row['last_activity'] = last_activity
        self.upsert('agents', row, on_conflict='id')
        return row

    def fetch_agent_live_status(self):
        """Statuses as pushed by the agents themselves, independent of session scans."""
        rows = self.select('agents', columns='id,status,last_activity,current_task,updated_at', order='created_at.asc')
        result = []
        for row in rows:
            session_count = 0
            total_tokens = 0
            try:
                meta = json.loads(row.get('current_task') or '{}')
            except (TypeError, ValueError):
                meta = {}
            if isinstance(meta, dict):
                session_count = _as_int(meta.get('sessionCount'))
                total_tokens = _as_int(meta.get('totalTokens'))
            last_activity = parse_iso(row.get('last_activity'))
            result.append({
                'dir': row.get('id'),
                'status': row.get('status') or 'offline',
                'sessionCount': session_count,
                'lastActive': int(last_activity.timestamp() * 1000) if last_activity else None,
                'totalTokens': total_tokens,
                'currentTask': row.get('current_task'),
                'updatedAt': row.get('updated_at'),
            })
        return result

    # -- tasks and knowledge ------------------------------------------------

    def fetch_tasks(self, date_from=None, date_to=None, status=None):
        filters = date_range_filters('created_at', date_from, date_to)
        if status:
            filters.append(('status', f'eq.{status}'))
        order = 'updated_at.desc' if status == 'blocked' else 'created_at.desc'
        return self.select('tasks', filters=filters, order=order)

    def fetch_knowledge(self, category=None):
        filters = [('category', f'eq.{category}')] if category else []
        return self.select('knowledge', filters=filters, order='created_at.desc')

    # -- activity -------------------------------------------------------------

    def fetch_activity_log(self, limit=10, date_from=None, date_to=None, now=None):
        rows = self.select(
            'activity_log',
            columns='*,agent:agents(name)',
            filters=date_range_filters('created_at', date_from, date_to),
            order='created_at.desc',
            limit=limit,
        )
        items = []
        for row in rows:
            created_at = parse_iso(row.get('created_at'))
            items.append({
                'id': row.get('id'),
                'agent_id': row.get('agent_id'),
                'agent_name': _agent_name(row),
                'action': row.get('action'),
                'details': row.get('details') or '',
                'metadata': row.get('metadata') or {},
                'created_at': row.get('created_at'),
                'time': format_time_ago(created_at, now) if created_at else '',
            })
        return items

    def fetch_agent_sparklines(self, now=None):
        """Hourly activity counts per agent for the last 24 hours.

        Index 0 is 23 hours ago, index 23 is the current hour.
        """
        if now is None:
            now = datetime.now(timezone.utc)
        since = (now - timedelta(hours=24)).strftime('%Y-%m-%dT%H:%M:%S.000Z')
        rows = self.select('activity_log', columns='agent_id,created_at', filters=[('created_at', f'gte.{since}')])
        result = {}
        for row in rows:
            created_at = parse_iso(row.get('created_at'))
            agent_id = row.get('agent_id')
            if created_at is None or not agent_id:
                continue
            hours_ago = int((now - created_at).total_seconds() // 3600)
            bucket = 23 - hours_ago
            if 0 <= bucket < 24:
                result.setdefault(agent_id, [0] * 24)[bucket] += 1
        return result

    # -- token usage ----------------------------------------------------------

    def fetch_token_usage(self, limit=100, date_from=None, date_to=None):
        rows = self.select(
            'token_usage',
            columns='*,agent:agents(name)',
            filters=date_range_filters('recorded_at', date_from, date_to),
            order='recorded_at.desc',
            limit=limit,
        )
        return [dict(row, agent_name=_agent_name(row)) for row in rows]

    def fetch_token_stats_by_agent(self, date_from=None, date_to=None):
        rows = self.select(
            'token_usage',
            columns='agent_id,total_tokens,cost_usd,model,agent:agents!agent_id(name)',
            filters=date_range_filters('recorded_at', date_from, date_to),
        )
        by_agent = {}
        for row in rows:
            key = row.get('agent_id')
            entry = by_agent.get(key)
            if entry is None:
                entry = by_agent[key] = {
                    'agent_id': key,
                    'agent_name': _agent_name(row),
                    'total_tokens': 0,
                    'total_cost': 0.0,
                    'model': row.get('model'),
                }
            entry['total_tokens'] += _as_int(row.get('total_tokens'))
            entry['total_cost'] += _as_float(row.get('cost_usd'))
        return sorted(by_agent.values(), key=lambda item: item['total_tokens'], reverse=True)

    def fetch_daily_token_stats(self, date_from=None, date_to=None, now=None):
        filters = date_range_filters('recorded_at', date_from, date_to)
        if not date_from:
            if now is None:
                now = datetime.now(timezone.utc)
            week_ago = (now - timedelta(days=7)).strftime('%Y-%m-%dT%H:%M:%S.000Z')
            filters.append(('recorded_at', f'gte.{week_ago}'))
        rows = self.select(
            'token_usage',
            columns='total_tokens,cost_usd,recorded_at',
            filters=filters,
            order='recorded_at.asc',
        )
        by_day = {}
        for row in rows:
            day = str(row.get('recorded_at') or '')[:10]
            entry = by_day.setdefault(day, {'date': day, 'total_tokens': 0, 'total_cost': 0.0})
            entry['total_tokens'] += _as_int(row.get('total_tokens'))
            entry['total_cost'] += _as_float(row.get('cost_usd'))
        return list(by_day.values())

    def fetch_token_summary(self, date_from=None, date_to=None, now=None):
        """Token and cost totals for today, the last seven days and the month."""
        if now is None:
            now = datetime.now(timezone.utc)
        filters = date_range_filters('recorded_at', date_from, date_to)
        if not date_from:
            month_start = now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
            filters.append(('recorded_at', f"gte.{month_start.strftime('%Y-%m-%dT%H:%M:%S.000Z')}"))
        rows = self.select('token_usage', columns='total_tokens,cost_usd,recorded_at', filters=filters)

        today_start = now.replace(hour=0, minute=0, second=0, microsecond=0)
        week_start = now - timedelta(days=7)
        summary = {
            'today': {'tokens': 0, 'cost': 0.0},
            'week': {'tokens': 0, 'cost': 0.0},
            'month': {'tokens': 0, 'cost': 0.0},
        }
        for row in rows:
            tokens = _as_int(row.get('total_tokens'))
            cost = _as_float(row.get('cost_usd'))
            recorded_at = parse_iso(row.get('recorded_at'))
            summary['month']['tokens'] += tokens
            summary['month']['cost'] += cost
            if recorded_at is None:
                continue
            if recorded_at >= week_start:
                summary['week']['tokens'] += tokens
                summary['week']['cost'] += cost
            if recorded_at >= today_start:
                summary['today']['tokens'] += tokens
                summary['today']['cost'] += cost
        return summary

    # -- sessions -----------------------------------------------------------

    def update_agent_liveness(self, agent_id, status, last_activity, current_task):
        self.update(
            'agents',
            {'status': status, 'last_activity': last_activity, 'current_task': current_task},
            [('id', f'eq.{agent_id}')],
        )

    def upsert_agent_sessions(self, rows):
        if not rows:
            return
        self.upsert('agent_sessions', rows, on_conflict='agent_id,session_key')


def epoch_ms_to_iso(ms):
    """Format epoch milliseconds as an ISO-8601 UTC string.

    Returns ``None`` for non-numeric, non-positive or unrepresentable values.
    """
    if not isinstance(ms, (int, float)) or isinstance(ms, bool) or ms <= 0:
        return None
    try:
        moment = datetime.fromtimestamp(ms / 1000, tz=timezone.utc)
    except (OverflowError, OSError, ValueError):
        return None
    return moment.strftime('%Y-%m-%dT%H:%M:%S.%f')[:-3] + 'Z'
