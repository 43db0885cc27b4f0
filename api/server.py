"""Relayer HTTP server — notification endpoints plus health, metrics and status.

Built on ``asyncio.start_server`` with a minimal HTTP/1.0 parser:

- ``POST /notify-deposit``              — 202 ``{"accepted": true}``
- ``POST /notify-withdrawal``           — 202 ``{"accepted": true}``
- ``POST /relayer/notify-deposit``      — 200 ``{"success", "message", "requestId"}``
- ``POST /relayer/notify-withdrawal``   — 200 ``{"success", "message", "requestId"}``
- ``GET /health``                       — liveness with uptime, in-flight count, EVM endpoints
- ``GET /metrics``                      — Prometheus text exposition
- ``GET /status/<key or requestId>``    — flow record, 404 when unknown

The 202 and 200 withdrawal routes differ only in response mode; both
go through the same orchestrator entrypoint.
"""

from __future__ import annotations

import asyncio
import json
import time
from typing import Any

import pydantic
import structlog

from core.errors import DuplicateRequestError, NotFoundError, ValidationError
from models.flow import ResponseMode
from models.requests import DepositNotification, WithdrawalNotification
from monitoring.metrics import MetricsRegistry

logger = structlog.get_logger("api.server")

__all__ = ["RelayerServer"]

_VERSION = "0.1.0"

_REASONS = {
    200: "OK",
    202: "Accepted",
    400: "Bad Request",
    404: "Not Found",
    405: "Method Not Allowed",
    413: "Payload Too Large",
    500: "Internal Server Error",
    503: "Service Unavailable",
}

# path -> (schema, response mode)
_NOTIFY_ROUTES: dict[str, tuple[type[pydantic.BaseModel], ResponseMode]] = {
    "/notify-deposit": (DepositNotification, ResponseMode.ACCEPTED),
    "/notify-withdrawal": (WithdrawalNotification, ResponseMode.ACCEPTED),
    "/relayer/notify-deposit": (DepositNotification, ResponseMode.ACKNOWLEDGED),
    "/relayer/notify-withdrawal": (WithdrawalNotification, ResponseMode.ACKNOWLEDGED),
}


class RelayerServer:
    """HTTP front door of the relayer.

    Parameters
    ----------
    orchestrator:
        :class:`execution.orchestrator.SignatureFlowOrchestrator`.
    metrics:
        Shared ``MetricsRegistry`` for the ``/metrics`` endpoint.
    host, port:
        Bind address.
    max_body_bytes:
        Larger request bodies are rejected with 413.
    rpc_manager:
        Optional :class:`web3_infra.rpc_manager.RPCManager`; its endpoint
        summary is reported under ``evm_endpoints`` on ``/health``.
    """

    def __init__(
        self,
        orchestrator: Any,
        metrics: MetricsRegistry | None = None,
        host: str = "0.0.0.0",
        port: int = 8080,
        max_body_bytes: int = 64 * 1024,
        rpc_manager: Any | None = None,
    ) -> None:
        self._orchestrator = orchestrator
        self._metrics = metrics
        self._rpc_manager = rpc_manager
        self._host = host
        self._port = port
        self._max_body_bytes = max_body_bytes
        self._start_time = time.monotonic()
        self._server: asyncio.Server | None = None

    @property
    def uptime_seconds(self) -> float:
        return time.monotonic() - self._start_time

    # ── HTTP server lifecycle ───────────────────────────────────

    async def start_server(self) -> None:
        self._server = await asyncio.start_server(
            self._handle_connection,
            self._host,
            self._port,
        )
        logger.info("api.server_started", host=self._host, port=self._port)

    async def stop_server(self) -> None:
        if self._server:
            self._server.close()
            await self._server.wait_closed()
            self._server = None
            logger.info("api.server_stopped")

    # ── HTTP handler ────────────────────────────────────────────

    async def _handle_connection(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
    ) -> None:
        """Handle a single HTTP connection."""
        try:
            request_line = await asyncio.wait_for(reader.readline(), timeout=5.0)
            if not request_line:
                return

            parts = request_line.decode("utf-8", errors="replace").strip().split()
            if len(parts) < 2:
                await self._send_json(writer, 400, {"error": "Bad Request"})
                return
            method, path = parts[0].upper(), parts[1].split("?", 1)[0]

            headers: dict[str, str] = {}
            while True:
                header_line = await asyncio.wait_for(reader.readline(), timeout=5.0)
                if header_line in (b"\r\n", b"\n", b""):
                    break
                name, _, value = header_line.decode("latin-1").partition(":")
                headers[name.strip().lower()] = value.strip()

            if method == "POST" and path in _NOTIFY_ROUTES:
                await self._handle_notify(reader, writer, path, headers)
            elif method != "GET":
                await self._send_json(writer, 405, {"error": "Method Not Allowed"})
            elif path == "/health":
                await self._handle_health(writer)
            elif path == "/metrics":
                await self._handle_metrics(writer)
            elif path.startswith("/status/"):
                await self._handle_status(writer, path[len("/status/"):])
            else:
                await self._send_json(writer, 404, {"error": "Not Found"})

        except Exception:
            logger.exception("api.handler_error")
            try:
                await self._send_json(writer, 500, {"error": "Internal server error"})
            except Exception:
                pass
        finally:
            try:
                writer.close()
                await writer.wait_closed()
            except Exception:
                pass

    async def _handle_notify(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
        path: str,
        headers: dict[str, str],
    ) -> None:
        schema, mode = _NOTIFY_ROUTES[path]

        try:
            length = int(headers.get("content-length", "0"))
        except ValueError:
            await self._send_json(writer, 400, {"error": "Invalid Content-Length"})
            return
        if length > self._max_body_bytes:
            await self._send_json(writer, 413, {"error": "Request body too large"})
            return

        try:
            raw = await asyncio.wait_for(reader.readexactly(length), timeout=5.0) if length else b""
        except (asyncio.IncompleteReadError, asyncio.TimeoutError):
            await self._send_json(writer, 400, {"error": "Incomplete request body"})
            return
        try:
            body = json.loads(raw or b"{}")
        except json.JSONDecodeError:
            await self._send_json(writer, 400, {"error": "Invalid JSON body"})
            return
        if not isinstance(body, dict):
            await self._send_json(writer, 400, {"error": "Missing required fields"})
            return

        required = [f.alias or name for name, f in schema.model_fields.items() if f.is_required()]
        if any(not body.get(key) for key in required):
            await self._send_json(writer, 400, {"error": "Missing required fields"})
            return

        try:
            notification = schema.model_validate(body)
        except pydantic.ValidationError as exc:
            details = [
                {"field": ".".join(str(p) for p in err["loc"]), "message": err["msg"]}
                for err in exc.errors()
            ]
            await self._send_json(writer, 400, {"error": "Invalid request", "details": details})
            return

        try:
            outcome = await self._orchestrator.submit(notification, response_mode=mode)
        except DuplicateRequestError as exc:
            await self._send_json(
                writer, 200, {"success": True, "message": "Already processing", "requestId": exc.request_id}
            )
            return
        except ValidationError as exc:
            await self._send_json(writer, 400, {"error": str(exc)})
            return
        except NotFoundError as exc:
            await self._send_json(writer, 404, {"error": str(exc)})
            return

        logger.info(
            "api.notification_accepted",
            path=path,
            key=outcome.key,
            duplicate=outcome.duplicate,
        )
        status, payload = outcome.http_response()
        await self._send_json(writer, status, payload)

    async def _handle_health(self, writer: asyncio.StreamWriter) -> None:
        """Liveness probe — always 200 if process is running."""
        payload: dict[str, Any] = {
            "status": "alive",
            "version": _VERSION,
            "uptime_seconds": round(self.uptime_seconds, 1),
            "inflight": self._orchestrator.inflight,
        }
        if self._rpc_manager is not None:
            payload["evm_endpoints"] = self._rpc_manager.get_endpoint_status()
        await self._send_json(writer, 200, payload)

    async def _handle_metrics(self, writer: asyncio.StreamWriter) -> None:
        """Prometheus /metrics endpoint."""
        if self._metrics:
            await self._send_response(
                writer, 200, self._metrics.exposition(),
                content_type="text/plain; version=0.0.4; charset=utf-8",
            )
        else:
            await self._send_response(writer, 503, b"Metrics not configured")

    async def _handle_status(self, writer: asyncio.StreamWriter, key: str) -> None:
        record = self._orchestrator.status(key) if key else None
        if record is None:
            await self._send_json(writer, 404, {"error": "Unknown request"})
            return
        await self._send_response(
            writer, 200, record.model_dump_json(by_alias=False).encode(),
            content_type="application/json",
        )

    async def _send_json(
        self,
        writer: asyncio.StreamWriter,
        status_code: int,
        payload: dict[str, Any],
    ) -> None:
        await self._send_response(
            writer, status_code, json.dumps(payload).encode(), content_type="application/json"
        )

    @staticmethod
    async def _send_response(
        writer: asyncio.StreamWriter,
        status_code: int,
        body: bytes,
        content_type: str = "text/plain",
    ) -> None:
        """Write a minimal HTTP/1.0 response."""
        reason = _REASONS.get(status_code, "Unknown")
        header = (
            f"HTTP/1.0 {status_code} {reason}\r\n"
            f"Content-Type: {content_type}\r\n"
            f"Content-Length: {len(body)}\r\n"
            f"Connection: close\r\n"
            f"\r\n"
        )
        writer.write(header.encode() + body)
        await writer.drain()
