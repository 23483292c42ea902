"""MCP server for ClawPulse.

Exposes the ClawPulse REST endpoints as MCP tools so AI clients can inspect
fleet liveness, pushed statuses, the task board, activity and token usage, and
push an agent status through a standard MCP interface.
"""

from __future__ import annotations

import json
import os
from typing import Any
from urllib.error import HTTPError, URLError
from urllib.parse import urlencode, quote
from urllib.request import Request, urlopen

from mcp.server.fastmcp import FastMCP

BASE_URL = os.environ.get("CLAWPULSE_BASE_URL", "http://127.0.0.1:5050").rstrip("/")
REQUEST_TIMEOUT_SEC = float(os.environ.get("CLAWPULSE_MCP_TIMEOUT_SEC", "10"))
PUSH_TOKEN = os.environ.get("CLAWPULSE_PUSH_TOKEN", "").strip()

mcp = FastMCP("clawpulse")


def _build_url(path: str, params: dict[str, Any] | None = None) -> str:
    clean = {k: v for k, v in (params or {}).items() if v not in (None, "")}
    query = urlencode(clean, doseq=True)
    return f"{BASE_URL}{path}{'?' + query if query else ''}"


def _http_request(method: str, path: str, params: dict[str, Any] | None = None,
                  body: dict[str, Any] | None = None) -> dict[str, Any]:
    url = _build_url(path, params)
    data = json.dumps(body).encode("utf-8") if body is not None else None
    request = Request(url=url, data=data, method=method)
    if data is not None:
        request.add_header("Content-Type", "application/json")
        if PUSH_TOKEN:
            request.add_header("Authorization", f"Bearer {PUSH_TOKEN}")

    try:
        with urlopen(request, timeout=REQUEST_TIMEOUT_SEC) as response:
            charset = response.headers.get_content_charset() or "utf-8"
            payload = response.read().decode(charset)
            return {
                "ok": True,
                "base_url": BASE_URL,
                "status_code": int(response.status),
                "data": json.loads(payload) if payload else {},
            }
    except HTTPError as exc:
        details = ""
        try:
            details = exc.read().decode("utf-8", errors="replace")
        except Exception:
            details = ""
        return {
            "ok": False,
            "base_url": BASE_URL,
            "status_code": int(exc.code),
            "error": f"HTTP error {exc.code}",
            "details": details,
        }
    except URLError as exc:
        return {
            "ok": False,
            "base_url": BASE_URL,
            "error": "Connection error",
            "details": str(exc.reason),
        }
    except json.JSONDecodeError as exc:
        return {
            "ok": False,
            "base_url": BASE_URL,
            "error": "Invalid JSON response",
            "details": str(exc),
        }
    except Exception as exc:
        return {
            "ok": False,
            "base_url": BASE_URL,
            "error": "Unexpected error",
            "details": str(exc),
        }


def _http_get(path: str, params: dict[str, Any] | None = None) -> dict[str, Any]:
    return _http_request("GET", path, params)


@mcp.tool()
def fleet_status(status: str = "") -> dict[str, Any]:
    """Return session-derived liveness for every agent from /api/agents.

    Pass status ("working", "idle" or "offline") to keep only matching agents.
    """
    payload = _http_get("/api/agents")
    if not payload.get("ok") or not status:
        return payload

    agents = payload.get("data") if isinstance(payload.get("data"), list) else []
    payload["data"] = [row for row in agents if isinstance(row, dict) and row.get("status") == status]
    return payload


@mcp.tool()
def agent_summary(agent_dir: str) -> dict[str, Any]:
    """Return the liveness summary of one agent directory from /api/agents/<dir>."""
    safe_dir = quote(agent_dir, safe="")
    return _http_get(f"/api/agents/{safe_dir}")


@mcp.tool()
def live_status() -> dict[str, Any]:
    """Return statuses pushed by the agents themselves from /api/live-status."""
    return _http_get("/api/live-status")


@mcp.tool()
def task_board(status: str = "", date_from: str = "", date_to: str = "") -> dict[str, Any]:
    """Return tasks from /api/tasks, optionally filtered by status and YYYY-MM-DD range."""
    return _http_get("/api/tasks", {"status": status, "from": date_from, "to": date_to})


@mcp.tool()
def recent_activity(limit: int = 10) -> dict[str, Any]:
    """Return the latest activity log entries from /api/activity."""
    return _http_get("/api/activity", {"limit": limit})


@mcp.tool()
def usage_summary() -> dict[str, Any]:
    """Return today/week/month token and cost totals from /api/usage/summary."""
    return _http_get("/api/usage/summary")


@mcp.tool()
def push_agent_status(agent_id: str, status: str, current_task: str = "", last_activity: str = "") -> dict[str, Any]:
    """Push an agent status through POST /api/agent-status."""
    body: dict[str, Any] = {"agent_id": agent_id, "status": status}
    if current_task:
        body["current_task"] = current_task
    if last_activity:
        body["last_activity"] = last_activity
    return _http_request("POST", "/api/agent-status", body=body)


if __name__ == "__main__":
    mcp.run()
