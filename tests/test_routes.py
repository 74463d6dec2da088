"""Tests for route matching."""

import pytest

from routes import API_PREFIX, is_health_path, match_route, normalize_path


@pytest.mark.parametrize(
    "method, path, handler, params",
    [
        ("GET", "/health", "health", {}),
        ("GET", "/presets", "list_presets", {}),
        ("POST", "/presets", "create_preset", {}),
        ("GET", "/presets/preset_abc", "get_preset", {"id": "preset_abc"}),
        ("PUT", "/presets/preset_abc", "update_preset", {"id": "preset_abc"}),
        ("DELETE", "/presets/preset_abc", "delete_preset", {"id": "preset_abc"}),
        ("POST", "/presets/preset_abc/usage", "record_usage", {"id": "preset_abc"}),
        ("GET", "/presets/scope/domain", "presets_by_scope", {"type": "domain"}),
        ("GET", "/devices", "list_devices", {}),
        ("GET", "/sync/log", "sync_log_all", {}),
        ("GET", "/sync/log/preset_abc", "sync_log", {"id": "preset_abc"}),
        ("GET", "/sync/status", "sync_status", {}),
        ("POST", "/sync/cleanup", "cleanup", {}),
    ],
)
def test_route_table(method, path, handler, params):
    """Test every endpoint resolves to its handler."""
    match = match_route(method, path)

    assert match.found
    assert match.route.handler == handler
    assert match.params == params


def test_api_prefix_is_optional():
    """Test the versioned prefix maps onto the same routes."""
    match = match_route("GET", API_PREFIX + "/presets/preset_abc")

    assert match.route.handler == "get_preset"
    assert match.params == {"id": "preset_abc"}


def test_trailing_slash_is_ignored():
    assert match_route("GET", "/presets/").route.handler == "list_presets"


def test_legacy_scope_path_captures_rest_of_url():
    """Test a URL scope value with slashes is captured whole."""
    match = match_route("GET", "/presets/scope/url/https://example.com/login/form")

    assert match.route.handler == "presets_by_scope"
    assert match.params == {"type": "url", "value": "https://example.com/login/form"}


def test_params_are_decoded_after_matching():
    """Test an encoded slash stays inside one segment."""
    match = match_route("GET", "/presets/scope/url/https%3A%2F%2Fexample.com%2Flogin")

    assert match.params["value"] == "https://example.com/login"

    encoded_id = match_route("GET", "/presets/a%2Fb")
    assert encoded_id.route.handler == "get_preset"
    assert encoded_id.params == {"id": "a/b"}


def test_wrong_method_reports_allowed_methods():
    """Test a known path with an unknown method lists the allowed ones."""
    match = match_route("PATCH", "/presets/preset_abc")

    assert not match.found
    assert match.allowed_methods == ("GET", "PUT", "DELETE")


def test_unknown_path():
    match = match_route("GET", "/nope")

    assert not match.found
    assert match.allowed_methods == ()


@pytest.mark.parametrize(
    "path, expected",
    [
        ("/api/v1", "/"),
        ("/api/v1/", "/"),
        ("/api/v1/health", "/health"),
        ("/api/v10/health", "/api/v10/health"),
        ("/presets//", "/presets"),
        ("", "/"),
    ],
)
def test_normalize_path(path, expected):
    assert normalize_path(path) == expected


def test_is_health_path():
    assert is_health_path("/health")
    assert is_health_path("/api/v1/health/")
    assert not is_health_path("/presets")
