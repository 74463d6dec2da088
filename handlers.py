"""
Route handlers translating HTTP requests into store operations
"""

import json
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional

from database import PresetStore
from exceptions import FilterRejection, ValidationError
from filters import FilterEngine
from health import HealthChecker
from logger import logger
from models import Preset, format_timestamp, utc_now

DEFAULT_CLEANUP_DAYS = 90
DEFAULT_PRESET_LOG_LIMIT = 100
DEFAULT_LOG_LIMIT = 50


@dataclass
class Request:
    """Transport-independent view of one HTTP request"""
    method: str
    path: str
    query: Dict[str, str] = field(default_factory=dict)
    headers: Dict[str, str] = field(default_factory=dict)
    body: bytes = b""
    client_address: Any = None
    content_length: int = 0
    params: Dict[str, str] = field(default_factory=dict)
    body_reader: Optional[Callable[[], bytes]] = field(default=None, repr=False)

    def header(self, name: str, default: Optional[str] = None) -> Optional[str]:
        lowered = name.lower()
        for key, value in self.headers.items():
            if key.lower() == lowered:
                return value
        return default

    @property
    def body_pending(self) -> bool:
        return self.body_reader is not None

    def load_body(self):
        """Pull the body off the transport; called once the request has passed its checks"""
        if self.body_reader is not None:
            reader, self.body_reader = self.body_reader, None
            self.body = reader()

    def json(self) -> Dict[str, Any]:
        if not self.body:
            raise ValidationError("Request body is required")
        try:
            data = json.loads(self.body.decode("utf-8"))
        except (UnicodeDecodeError, ValueError) as e:
            raise ValidationError("Invalid request body", original_error=e)
        if not isinstance(data, dict):
            raise ValidationError("Request body must be a JSON object")
        return data


@dataclass
class Response:
    status: int
    body: Optional[Dict[str, Any]] = None
    headers: Dict[str, str] = field(default_factory=dict)

    def encode(self) -> bytes:
        if self.body is None:
            return b""
        return json.dumps(self.body).encode("utf-8")


def success_response(data: Any = None, message: Optional[str] = None, status: int = 200) -> Response:
    body: Dict[str, Any] = {"success": True}
    if data is not None:
        body["data"] = data
    if message:
        body["message"] = message
    return Response(status=status, body=body)


def error_response(status: int, error: str) -> Response:
    return Response(status=status, body={"success": False, "error": error})


def _required_query(request: Request, name: str) -> str:
    value = request.query.get(name, "").strip()
    if not value:
        raise ValidationError(f"{name} parameter required")
    return value


def _int_query(request: Request, name: str, default: int) -> int:
    raw = request.query.get(name, "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError as e:
        raise ValidationError(f"{name} must be an integer", context={name: raw}, original_error=e)


class APIHandlers:
    """One handler per route; each validates input, calls the store and shapes the reply"""

    def __init__(self, store: PresetStore, filters: FilterEngine, health_checker: HealthChecker):
        self.store = store
        self.filters = filters
        self.health_checker = health_checker

    def dispatch(self, handler_name: str, request: Request) -> Response:
        return getattr(self, f"handle_{handler_name}")(request)

    def _check_scope_value(self, scope_value: str):
        if not self.filters.is_pattern_allowed(scope_value):
            raise FilterRejection("URL not allowed", context={"scope_value": scope_value})

    def handle_health(self, request: Request) -> Response:
        status = self.health_checker.get_health_status()
        if status["status"] == "ok":
            return success_response(status, "Service is healthy")
        response = error_response(503, "Service is unhealthy")
        response.body["data"] = status
        return response

    def handle_list_presets(self, request: Request) -> Response:
        device_id = _required_query(request, "device_id")
        presets = self.store.get_all_presets(device_id)
        return success_response([p.to_dict() for p in presets], f"Retrieved {len(presets)} presets")

    def handle_create_preset(self, request: Request) -> Response:
        preset = Preset.from_dict(request.json())
        preset.validate()
        if preset.scope_value:
            self._check_scope_value(preset.scope_value)

        stored = self.store.save_preset(preset)
        logger.preset_saved(stored.id, stored.device_id)
        return success_response({"preset": stored.to_dict()}, "Preset saved successfully", status=201)

    def handle_get_preset(self, request: Request) -> Response:
        device_id = _required_query(request, "device_id")
        preset = self.store.get_preset(request.params["id"], device_id)
        return success_response(preset.to_dict(), "Preset found")

    def handle_update_preset(self, request: Request) -> Response:
        preset = Preset.from_dict(request.json())
        preset.id = request.params["id"]
        preset.validate()
        if preset.scope_value:
            self._check_scope_value(preset.scope_value)

        stored = self.store.save_preset(preset)
        logger.preset_saved(stored.id, stored.device_id)
        return success_response(stored.to_dict(), "Preset updated successfully")

    def handle_delete_preset(self, request: Request) -> Response:
        device_id = _required_query(request, "device_id")
        preset_id = request.params["id"]
        self.store.delete_preset(preset_id, device_id)
        logger.preset_deleted(preset_id, device_id)
        return success_response(message="Preset deleted successfully")

    def handle_record_usage(self, request: Request) -> Response:
        preset = self.store.record_usage(request.params["id"])
        return success_response(
            {"id": preset.id, "useCount": preset.use_count, "lastUsed": format_timestamp(preset.last_used)},
            "Usage updated successfully"
        )

    def handle_presets_by_scope(self, request: Request) -> Response:
        scope_type = request.params.get("type", "").strip()
        # The query parameter form is preferred; the path form keeps older clients working
        scope_value = request.query.get("value") or request.params.get("value", "")
        if not scope_type or not scope_value:
            raise ValidationError("scope type and value required")

        self._check_scope_value(scope_value)

        device_id = request.query.get("device_id", "").strip() or None
        presets = self.store.get_presets_by_scope(scope_type, scope_value, device_id)
        return success_response([p.to_dict() for p in presets], f"Retrieved {len(presets)} presets")

    def handle_list_devices(self, request: Request) -> Response:
        devices = self.store.list_devices()
        return success_response(devices, f"Retrieved {len(devices)} devices")

    def handle_sync_log(self, request: Request) -> Response:
        limit = _int_query(request, "limit", DEFAULT_PRESET_LOG_LIMIT)
        entries = self.store.get_sync_log(request.params["id"], limit)
        return success_response([e.to_dict() for e in entries], f"Retrieved {len(entries)} log entries")

    def handle_sync_log_all(self, request: Request) -> Response:
        limit = _int_query(request, "limit", DEFAULT_LOG_LIMIT)
        entries = self.store.get_sync_log(None, limit)
        return success_response([e.to_dict() for e in entries], "Sync log retrieved")

    def handle_sync_status(self, request: Request) -> Response:
        device_id = _required_query(request, "device_id")
        summary = self.store.get_device_summary(device_id)
        status = {
            "device_id": device_id,
            "preset_count": summary["preset_count"],
            "last_sync": summary["last_updated"],
            "server_time": format_timestamp(utc_now()),
            "status": "synced",
        }
        return success_response(status, "Sync status retrieved")

    def handle_cleanup(self, request: Request) -> Response:
        days = _int_query(request, "days", DEFAULT_CLEANUP_DAYS)
        if days < 0:
            raise ValidationError("days must not be negative")

        count = self.store.cleanup_older_than(days)
        return success_response(
            {"status": "completed", "removed_count": count, "days": days},
            f"Cleanup completed: {count} presets removed"
        )
