"""JSON HTTP control surface over the position manager and activity log."""

from __future__ import annotations

import json
import logging
import re
import threading
from datetime import date, datetime, timezone
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any, Callable, Dict, Optional, Tuple

from core.activity_log import ActivityLogger
from core.exceptions import (
    EngineError,
    GatewayRejected,
    NotFound,
    PolicyViolation,
    TransientGatewayError,
    ValidationError,
)
from core.position_manager import PositionManager, build_entry_request

logger = logging.getLogger(__name__)

POSITIONS_PATH = "/api/v1/positions/managed"
ACTIVITY_PATH = "/api/v1/activity"
_POSITION_ID = re.compile(r"^/api/v1/positions/managed/(?P<id>[A-Za-z0-9_-]+)$")
_ACTIVITY_DATE = re.compile(r"^/api/v1/activity/(?P<day>\d{4}-\d{2}-\d{2})$")

Response = Tuple[int, Dict[str, Any]]


def error_status(exc: Exception) -> int:
    """HTTP status for an engine error."""
    if isinstance(exc, ValidationError):
        return 400
    if isinstance(exc, NotFound):
        return 404
    if isinstance(exc, PolicyViolation):
        return 409
    if isinstance(exc, (TransientGatewayError, GatewayRejected)):
        return 502
    return 500


def error_body(exc: Exception) -> Dict[str, Any]:
    body: Dict[str, Any] = {"error": type(exc).__name__, "message": str(exc)}
    if isinstance(exc, ValidationError):
        body["field"] = exc.field
    elif isinstance(exc, PolicyViolation):
        body["reason"] = exc.reason
    elif isinstance(exc, NotFound):
        body["position_id"] = exc.position_id
    return body


class ControlApi:
    """
    Route table for the control surface, independent of the HTTP plumbing.

    Every handler returns ``(status, payload)``. Engine errors are translated to
    status codes here and nowhere else.
    """

    def __init__(
        self,
        manager: PositionManager,
        activity_log: ActivityLogger,
        health_provider: Optional[Callable[[], Dict[str, Any]]] = None,
    ):
        self.manager = manager
        self.activity_log = activity_log
        self._health_provider = health_provider

    def dispatch(self, method: str, path: str, body: Optional[Dict[str, Any]]) -> Response:
        path = path.split("?", 1)[0].rstrip("/") or "/"
        try:
            return self._route(method, path, body)
        except EngineError as exc:
            status = error_status(exc)
            log = logger.error if status >= 500 else logger.info
            log("%s %s -> %s: %s", method, path, status, exc)
            return status, error_body(exc)

    def _route(self, method: str, path: str, body: Optional[Dict[str, Any]]) -> Response:
        if path in ("/", "/health", "/healthz") and method == "GET":
            return self.health()

        if path == POSITIONS_PATH:
            if method == "GET":
                return 200, {"positions": [p.to_dict() for p in self.manager.list()]}
            if method == "POST":
                return self.create_position(body or {})
            return 405, {"error": "MethodNotAllowed"}

        match = _POSITION_ID.match(path)
        if match:
            position_id = match.group("id")
            if method == "GET":
                return 200, self.manager.get(position_id).to_dict()
            if method == "DELETE":
                reason = str((body or {}).get("reason") or "manual")
                return 200, self.manager.close(position_id, reason=reason).to_dict()
            return 405, {"error": "MethodNotAllowed"}

        if path == ACTIVITY_PATH and method == "GET":
            return 200, {"dates": self.activity_log.list_log_dates()}
        if path == f"{ACTIVITY_PATH}/current" and method == "GET":
            return 200, self.activity_log.current_activity()
        if path == f"{ACTIVITY_PATH}/session/start" and method == "POST":
            return self.start_session(body or {})
        if path == f"{ACTIVITY_PATH}/session/end" and method == "POST":
            state = self.activity_log.end_session(reason=str((body or {}).get("reason") or "requested"))
            return 200, {"session": state.to_dict() if state else None}
        if path == f"{ACTIVITY_PATH}/log" and method == "POST":
            return self.log_event(body or {})

        match = _ACTIVITY_DATE.match(path)
        if match and method == "GET":
            try:
                day = date.fromisoformat(match.group("day"))
            except ValueError:
                raise ValidationError("date", "must be YYYY-MM-DD") from None
            return 200, {"date": day.isoformat(), "records": self.activity_log.activity_for_date(day)}

        return 404, {"error": "NotFound", "message": f"no route for {method} {path}"}

    # ── Handlers ─────────────────────────────────────────────────────
    def health(self) -> Response:
        state = self.activity_log.session.state
        last_tick = self.manager.last_tick
        payload: Dict[str, Any] = {
            "ok": True,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "open_positions": sum(1 for p in self.manager.list() if p.is_active),
            "session": state.to_dict() if state else None,
            "last_tick": last_tick.to_dict() if last_tick else None,
        }
        if self._health_provider:
            payload.update(self._health_provider() or {})
        return (200 if payload.get("ok", True) else 503), payload

    def create_position(self, body: Dict[str, Any]) -> Response:
        """Admit the position, then submit the entry order through the gateway."""
        request = build_entry_request(body)
        position = self.manager.place(request)
        try:
            order = self.manager.gateway.submit_entry(
                position.symbol, position.quantity, position.side.value, position.asset_class
            )
        except (TransientGatewayError, GatewayRejected) as exc:
            logger.error("Entry order failed for %s (%s): %s", position.symbol, position.id, exc)
            try:
                self.manager.close(position.id, reason="entry_order_failed", submit_order=False)
            except EngineError as close_exc:
                logger.error("Could not retire %s after failed entry: %s", position.id, close_exc)
            raise
        order_info = {
            "order_id": order.order_id,
            "status": order.status,
            "side": order.side,
            "quantity": order.quantity,
        }
        return 201, {"position": position.to_dict(), "order": order_info}

    def start_session(self, body: Dict[str, Any]) -> Response:
        raw_value = body.get("starting_portfolio_value")
        if raw_value is None:
            value = self.manager.gateway.get_account().portfolio_value
        else:
            try:
                value = float(raw_value)
            except (TypeError, ValueError):
                raise ValidationError("starting_portfolio_value", "must be a number") from None
        if value <= 0:
            raise ValidationError("starting_portfolio_value", "must be > 0")
        state = self.activity_log.start_session(value)
        return 201, {"session": state.to_dict()}

    def log_event(self, body: Dict[str, Any]) -> Response:
        event = str(body.get("event") or "").strip()
        if not event:
            raise ValidationError("event", "is required")
        payload = body.get("payload") or {}
        if not isinstance(payload, dict):
            raise ValidationError("payload", "must be a JSON object")
        fields = {str(k): v for k, v in payload.items() if k != "event"}
        record = self.activity_log.record_activity(event, **fields)
        return 201, record.to_dict()


class ControlServer:
    """Threaded JSON server exposing ControlApi."""

    def __init__(self, api: ControlApi, host: str = "127.0.0.1", port: int = 8080):
        self._api = api
        self._host = host
        self._port = int(port)
        self._server: Optional[ThreadingHTTPServer] = None
        self._thread: Optional[threading.Thread] = None

    @property
    def port(self) -> Optional[int]:
        if self._server is None:
            return None
        return self._server.server_port

    def start(self) -> None:
        if self._thread:
            return

        handler_cls = self._build_handler(self._api)
        self._server = ThreadingHTTPServer((self._host, self._port), handler_cls)
        self._server.daemon_threads = True
        self._thread = threading.Thread(target=self._server.serve_forever, name="ControlServer", daemon=True)
        self._thread.start()
        logger.info("Control server listening on %s:%s", self._host, self._server.server_port)

    def stop(self) -> None:
        if not self._server:
            return
        try:
            self._server.shutdown()
            self._server.server_close()
        except OSError as exc:  # pragma: no cover - best-effort shutdown
            logger.warning("Failed shutting down control server: %s", exc)
        if self._thread:
            self._thread.join(timeout=3)
        self._thread = None
        self._server = None

    @staticmethod
    def _build_handler(api: ControlApi):

        class ControlHandler(BaseHTTPRequestHandler):
            def _read_body(self) -> Optional[Dict[str, Any]]:
                length = int(self.headers.get("Content-Length") or 0)
                if length <= 0:
                    return None
                raw = self.rfile.read(length)
                try:
                    return json.loads(raw.decode("utf-8"))
                except (UnicodeDecodeError, json.JSONDecodeError) as exc:
                    raise ValidationError("body", f"invalid JSON: {exc}") from None

            def _handle(self, method: str) -> None:
                try:
                    body = self._read_body()
                    status, payload = api.dispatch(method, self.path, body)
                except ValidationError as exc:
                    status, payload = 400, error_body(exc)
                except Exception as exc:  # pragma: no cover - last-resort guard
                    logger.exception("Unhandled control server error on %s %s", method, self.path)
                    status, payload = 500, {"error": type(exc).__name__, "message": str(exc)}

                data = json.dumps(payload, default=str).encode("utf-8")
                self.send_response(status)
                self.send_header("Content-Type", "application/json")
                self.send_header("Content-Length", str(len(data)))
                self.end_headers()
                self.wfile.write(data)

            def do_GET(self):  # type: ignore[override]
                self._handle("GET")

            def do_POST(self):  # type: ignore[override]
                self._handle("POST")

            def do_DELETE(self):  # type: ignore[override]
                self._handle("DELETE")

            def log_message(self, format: str, *args: Any) -> None:
                logger.debug("control %s - %s", self.address_string(), format % args)

        return ControlHandler


__all__ = ["ControlApi", "ControlServer", "error_status"]
