"""
Data models for the webform sync service
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from exceptions import ValidationError

SCOPE_TYPES = ("url", "domain", "global")

TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def format_timestamp(value: Optional[datetime]) -> Optional[str]:
    """Render a datetime as a fixed-width UTC string that sorts lexically"""
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime(TIMESTAMP_FORMAT)


def parse_timestamp(value: Any, field_name: str = "timestamp") -> Optional[datetime]:
    """Parse an ISO-8601 timestamp into an aware UTC datetime"""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str):
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError as e:
            raise ValidationError(f"{field_name} is not a valid ISO-8601 timestamp",
                                  context={"value": value}, original_error=e)
    else:
        raise ValidationError(f"{field_name} must be a string timestamp", context={"value": value})

    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def _first_present(data: Dict[str, Any], *keys: str, default: Any = None) -> Any:
    for key in keys:
        if key in data and data[key] is not None:
            return data[key]
    return default


def _require_string(value: Any, field_name: str) -> str:
    if value is None:
        return ""
    if not isinstance(value, str):
        raise ValidationError(f"{field_name} must be a string", context={"value": value})
    return value.strip()


@dataclass
class Preset:
    """A named, scoped bundle of form-field data owned by a device"""
    name: str
    device_id: str
    scope_type: str = "global"
    scope_value: str = ""
    fields: Any = None
    encrypted: bool = False
    id: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    last_used: Optional[datetime] = None
    use_count: int = 0
    metadata: Optional[Dict[str, Any]] = None

    def validate(self):
        """Check the fields every stored preset must carry"""
        if not self.device_id:
            raise ValidationError("device_id is required")
        if not self.name:
            raise ValidationError("name is required")
        if self.scope_type not in SCOPE_TYPES:
            raise ValidationError(
                f"scopeType must be one of: {', '.join(SCOPE_TYPES)}",
                context={"scopeType": self.scope_type}
            )
        if self.metadata is not None and not isinstance(self.metadata, dict):
            raise ValidationError("metadata must be an object")

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "id": self.id,
            "name": self.name,
            "scopeType": self.scope_type,
            "scopeValue": self.scope_value,
            "fields": self.fields,
            "encrypted": self.encrypted,
            "createdAt": format_timestamp(self.created_at),
            "updatedAt": format_timestamp(self.updated_at),
            "lastUsed": format_timestamp(self.last_used),
            "useCount": self.use_count,
            "deviceId": self.device_id,
        }
        if self.metadata is not None:
            data["metadata"] = self.metadata
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Preset':
        """Build a preset from a client request body.

        Accepts the camelCase wire names plus snake_case aliases, and the
        legacy ``encryptedFields`` key when ``fields`` is absent.
        """
        if not isinstance(data, dict):
            raise ValidationError("Request body must be a JSON object")

        scope_type = _require_string(_first_present(data, "scopeType", "scope_type"), "scopeType")
        encrypted = _first_present(data, "encrypted", "is_encrypted", default=False)
        if not isinstance(encrypted, bool):
            raise ValidationError("encrypted must be a boolean")
        use_count = _first_present(data, "useCount", "use_count", default=0)
        if isinstance(use_count, bool) or not isinstance(use_count, int) or use_count < 0:
            raise ValidationError("useCount must be a non-negative integer")
        preset_id = _require_string(_first_present(data, "id"), "id")

        return cls(
            id=preset_id or None,
            name=_require_string(_first_present(data, "name"), "name"),
            device_id=_require_string(_first_present(data, "deviceId", "device_id"), "deviceId"),
            scope_type=scope_type or "global",
            scope_value=_require_string(_first_present(data, "scopeValue", "scope_value"), "scopeValue"),
            fields=_first_present(data, "fields", "encryptedFields", "encrypted_fields"),
            encrypted=encrypted,
            created_at=parse_timestamp(_first_present(data, "createdAt", "created_at"), "createdAt"),
            last_used=parse_timestamp(_first_present(data, "lastUsed", "last_used"), "lastUsed"),
            use_count=use_count,
            metadata=_first_present(data, "metadata"),
        )


@dataclass
class SyncLogEntry:
    """One append-only record of a mutating store operation"""
    id: int
    preset_id: str
    action: str
    device_id: str
    timestamp: datetime = field(default_factory=utc_now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "preset_id": self.preset_id,
            "action": self.action,
            "device_id": self.device_id,
            "timestamp": format_timestamp(self.timestamp),
        }
