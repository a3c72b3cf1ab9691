"""
HTTP server for metrics, status and health.

- /metrics - Prometheus exposition of the RichMetrics registry
- /status  - StatusBoard JSON snapshot
- /health  - liveness, with per-component health
- /ready   - readiness (loops running)
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import asdict, dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple
from urllib.parse import parse_qs, urlparse

from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from botdesk.core.utils import now_ms
from botdesk.monitoring.metrics_rich import RichMetrics

log = logging.getLogger("botdesk")

_JSON = "application/json"
_OPEN_PATHS = ("/health", "/ready")


@dataclass
class HealthStatus:
    healthy: bool = True
    ready: bool = False
    last_heartbeat_ms: int = 0
    components: Dict[str, bool] = field(default_factory=dict)
    details: Dict[str, Any] = field(default_factory=dict)


class HealthChecker:
    """
    Component health for /health and /ready.

    The app reports "config", "trade_updates" and "registry". The process is
    healthy while no reported component is failing, and ready once loops are
    running (set_ready) and it is healthy.
    """

    def __init__(self) -> None:
        self._status = HealthStatus(last_heartbeat_ms=now_ms())
        self._callbacks: List[Callable[[str, bool], None]] = []

    def set_component_health(self, name: str, healthy: bool, detail: Optional[str] = None) -> None:
        self._status.components[name] = healthy
        if detail:
            self._status.details[name] = detail
        self.heartbeat()
        for cb in self._callbacks:
            try:
                cb(name, healthy)
            except Exception as exc:
                log.warning(json.dumps({"event": "health_callback_error", "component": name, "err": str(exc)}))

    def set_ready(self, ready: bool) -> None:
        self._status.ready = ready
        self.heartbeat()

    def heartbeat(self) -> None:
        self._status.last_heartbeat_ms = now_ms()

    def register_callback(self, callback: Callable[[str, bool], None]) -> None:
        self._callbacks.append(callback)

    def is_healthy(self) -> bool:
        return all(self._status.components.values())

    def is_ready(self) -> bool:
        return self._status.ready and self.is_healthy()

    def get_status(self) -> HealthStatus:
        return HealthStatus(
            healthy=self.is_healthy(),
            ready=self.is_ready(),
            last_heartbeat_ms=self._status.last_heartbeat_ms,
            components=dict(self._status.components),
            details=dict(self._status.details),
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self.get_status())


def _response(status: str, content_type: Optional[str] = None, body: bytes = b"") -> bytes:
    head = [f"HTTP/1.1 {status}", f"Content-Length: {len(body)}", "Connection: close"]
    if content_type:
        head.insert(1, f"Content-Type: {content_type}")
    return ("\r\n".join(head) + "\r\n\r\n").encode() + body


def _parse_request(raw: bytes) -> Tuple[str, Dict[str, list], Dict[str, str]]:
    """(path, query, lower-cased headers) of a raw HTTP/1.1 request head."""
    lines = raw.decode("utf-8", errors="ignore").split("\r\n")
    parts = lines[0].split(" ")
    target = urlparse(parts[1] if len(parts) >= 2 else "/")
    headers = {}
    for line in lines[1:]:
        name, sep, value = line.partition(":")
        if sep:
            headers[name.strip().lower()] = value.strip()
    return target.path, parse_qs(target.query), headers


async def start_metrics_server(
    metrics: RichMetrics,
    port: int,
    status_board=None,
    auth_token: Optional[str] = None,
    health_checker: Optional[HealthChecker] = None,
    host: str = "0.0.0.0",
) -> asyncio.AbstractServer:
    """
    Start the HTTP server.

    /health and /ready never require auth; /metrics and /status require the
    bearer token (header or ?token=) when one is configured.
    """
    health = health_checker or HealthChecker()
    if health_checker is None:
        health.set_ready(True)

    def authorized(query: Dict[str, list], headers: Dict[str, str]) -> bool:
        if not auth_token:
            return True
        return headers.get("authorization") == f"Bearer {auth_token}" or query.get("token", [""])[0] == auth_token

    async def route(path: str) -> bytes:
        if path == "/health":
            ok = health.is_healthy()
            return _response("200 OK" if ok else "503 Service Unavailable", _JSON, json.dumps(health.to_dict()).encode())
        if path == "/ready":
            ok = health.is_ready()
            return _response("200 OK" if ok else "503 Service Unavailable", _JSON, json.dumps({"ready": ok}).encode())
        if path.startswith("/status") and status_board is not None:
            try:
                snap = await status_board.snapshot()
            except Exception as exc:
                log.error(json.dumps({"event": "status_snapshot_error", "err": str(exc)}))
                return _response("500 Internal Server Error")
            return _response("200 OK", _JSON, json.dumps(snap, default=str).encode())
        return _response("200 OK", CONTENT_TYPE_LATEST, generate_latest(metrics.get_registry()))

    async def handle(reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        path, query, headers = _parse_request(await reader.read(2048))
        if path not in _OPEN_PATHS and not authorized(query, headers):
            resp = _response("401 Unauthorized")
        else:
            resp = await route(path)
        try:
            writer.write(resp)
            await writer.drain()
        finally:
            writer.close()

    server = await asyncio.start_server(handle, host, port)
    log.info(json.dumps({"event": "metrics_server_started", "host": host, "port": port}))
    return server
