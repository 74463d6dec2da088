"""
Route table and path parameter extraction
"""

import re
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Pattern, Tuple
from urllib.parse import unquote

API_PREFIX = "/api/v1"

_PARAM_RE = re.compile(r"\{(\w+)(\*?)\}")


@dataclass(frozen=True)
class Route:
    """One (method, path pattern) -> handler entry.

    ``{name}`` captures a single path segment, ``{name*}`` captures the rest
    of the path including slashes.
    """
    method: str
    pattern: str
    handler: str
    regex: Pattern = field(init=False, repr=False, compare=False)

    def __post_init__(self):
        object.__setattr__(self, "regex", compile_pattern(self.pattern))


@dataclass
class RouteMatch:
    route: Optional[Route] = None
    params: Dict[str, str] = field(default_factory=dict)
    allowed_methods: Tuple[str, ...] = ()

    @property
    def found(self) -> bool:
        return self.route is not None


def compile_pattern(pattern: str) -> Pattern:
    parts = []
    position = 0
    for match in _PARAM_RE.finditer(pattern):
        parts.append(re.escape(pattern[position:match.start()]))
        name, greedy = match.group(1), match.group(2)
        parts.append(f"(?P<{name}>.+)" if greedy else f"(?P<{name}>[^/]+)")
        position = match.end()
    parts.append(re.escape(pattern[position:]))
    return re.compile("^" + "".join(parts) + "$")


ROUTES: Tuple[Route, ...] = (
    Route("GET", "/health", "health"),
    Route("GET", "/presets", "list_presets"),
    Route("POST", "/presets", "create_preset"),
    Route("GET", "/presets/scope/{type}", "presets_by_scope"),
    Route("GET", "/presets/scope/{type}/{value*}", "presets_by_scope"),
    Route("GET", "/presets/{id}", "get_preset"),
    Route("PUT", "/presets/{id}", "update_preset"),
    Route("DELETE", "/presets/{id}", "delete_preset"),
    Route("POST", "/presets/{id}/usage", "record_usage"),
    Route("GET", "/devices", "list_devices"),
    Route("GET", "/sync/log", "sync_log_all"),
    Route("GET", "/sync/log/{id}", "sync_log"),
    Route("GET", "/sync/status", "sync_status"),
    Route("POST", "/sync/cleanup", "cleanup"),
)


def normalize_path(path: str) -> str:
    """Strip the optional API prefix and any trailing slash"""
    if path == API_PREFIX or path.startswith(API_PREFIX + "/"):
        path = path[len(API_PREFIX):]
    if len(path) > 1 and path.endswith("/"):
        path = path.rstrip("/")
    return path or "/"


def match_route(method: str, path: str, routes: Tuple[Route, ...] = ROUTES) -> RouteMatch:
    """Resolve a request to a route.

    ``path`` is the raw (still percent-encoded) path without query string;
    captured parameters are decoded after matching so an encoded ``/`` never
    splits a segment. When the path is known but the method is not, the
    match carries the allowed methods instead of a route.
    """
    path = normalize_path(path)
    allowed: List[str] = []
    for route in routes:
        found = route.regex.match(path)
        if not found:
            continue
        if route.method != method:
            allowed.append(route.method)
            continue
        params = {name: unquote(value) for name, value in found.groupdict().items()}
        return RouteMatch(route=route, params=params)
    return RouteMatch(allowed_methods=tuple(dict.fromkeys(allowed)))


def is_health_path(path: str) -> bool:
    return normalize_path(path) == "/health"
