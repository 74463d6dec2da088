"""Shared fixtures for the webform sync tests."""

from datetime import datetime, timedelta, timezone

import pytest

from config import AccessControlConfig, AuthenticationConfig, CORSConfig
from database import PresetStore
from filters import FilterEngine, IPFilter, PatternFilter
from handlers import APIHandlers, Request
from health import HealthChecker
from models import Preset
from server import RequestPipeline


class FakeClock:
    """Deterministic clock injected into the store."""

    def __init__(self, start: datetime = None):
        self.now = start or datetime(2024, 1, 1, 12, 0, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


def make_preset(**overrides) -> Preset:
    values = {
        "name": "Login",
        "device_id": "dev1",
        "scope_type": "domain",
        "scope_value": "example.com",
        "fields": {"user": "a"},
    }
    values.update(overrides)
    return Preset(**values)


def make_request(method: str, path: str, query=None, body: bytes = b"", headers=None,
                 client=("127.0.0.1", 50000)) -> Request:
    return Request(
        method=method,
        path=path,
        query=query or {},
        headers=headers or {},
        body=body,
        client_address=client,
        content_length=len(body),
    )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store(tmp_path, clock):
    preset_store = PresetStore(
        str(tmp_path / "presets.db"),
        lock_timeout=5,
        backup_dir=str(tmp_path / "backups"),
        max_backups=2,
        clock=clock,
    )
    yield preset_store
    preset_store.close()


@pytest.fixture
def build_pipeline(store):
    """Factory for pipelines over the shared store with custom rules."""

    def _build(ip_filter: IPFilter = None, pattern_filter: PatternFilter = None,
               auth: AuthenticationConfig = None, cors: CORSConfig = None,
               max_body_bytes: int = 1024 * 1024) -> RequestPipeline:
        filters = FilterEngine(
            ip_filter=ip_filter or IPFilter(),
            pattern_filter=pattern_filter or PatternFilter(),
        )
        handlers = APIHandlers(store, filters, HealthChecker(store, cache_duration=0))
        return RequestPipeline(
            handlers,
            filters,
            auth=auth,
            cors=cors,
            log_requests=False,
            max_body_bytes=max_body_bytes,
            max_concurrent_requests=4,
            slot_timeout=1,
        )

    return _build


@pytest.fixture
def pipeline(build_pipeline):
    return build_pipeline()


@pytest.fixture
def whitelist_access():
    return AccessControlConfig(mode="whitelist", whitelist=["127.0.0.1"])
