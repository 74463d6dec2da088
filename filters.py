"""
Origin (network range) and pattern (domain/URL) filtering
"""

import ipaddress
import re
from dataclasses import dataclass, field
from typing import Optional, Pattern, Sequence, Tuple, Union

from config import AccessControlConfig, URLFilterConfig
from exceptions import ConfigurationError
from logger import logger

IPNetwork = Union[ipaddress.IPv4Network, ipaddress.IPv6Network]
IPAddress = Union[ipaddress.IPv4Address, ipaddress.IPv6Address]


def split_host_port(address) -> str:
    """Return the host part of a caller address.

    Accepts a socket address tuple, a bare IPv4/IPv6 address, ``ip:port`` or
    ``[ipv6]:port``.
    """
    if isinstance(address, (tuple, list)):
        return str(address[0]) if address else ""
    text = str(address or "").strip()
    if text.startswith("["):
        end = text.find("]")
        return text[1:end] if end != -1 else ""
    if text.count(":") == 1:
        return text.split(":", 1)[0]
    # Bare IPv4, bare IPv6 or garbage
    return text


def parse_address(address) -> Optional[IPAddress]:
    """Parse a caller address into an ip_address, or None if malformed"""
    host = split_host_port(address)
    # Drop an IPv6 zone id such as fe80::1%eth0
    host = host.split("%", 1)[0]
    try:
        ip = ipaddress.ip_address(host)
    except ValueError:
        return None
    if isinstance(ip, ipaddress.IPv6Address) and ip.ipv4_mapped is not None:
        return ip.ipv4_mapped
    return ip


def parse_networks(entries: Sequence[str], list_name: str) -> Tuple[IPNetwork, ...]:
    """Compile IP/CIDR strings into networks, skipping malformed entries"""
    networks = []
    for entry in entries or []:
        try:
            networks.append(ipaddress.ip_network(str(entry).strip(), strict=False))
        except ValueError:
            logger.warning(f"Invalid IP/CIDR in {list_name}: {entry}",
                          list_name=list_name, entry=entry)
    return tuple(networks)


def compile_pattern(line: str, use_regex: bool = False) -> Pattern:
    """Compile one rule line.

    Glob lines are escaped, ``*`` matches any substring and the whole line is
    anchored. Regex lines are used as-is and searched.
    """
    if use_regex:
        return re.compile(line)
    escaped = re.escape(line).replace(r"\*", ".*")
    return re.compile(f"^{escaped}\\Z")


def load_pattern_file(path: str, use_regex: bool = False) -> Tuple[Pattern, ...]:
    """Load patterns from a line-oriented rule file.

    An unreadable file is a ConfigurationError. Blank lines and ``#``
    comments are ignored; a line that fails to compile is reported and
    skipped.
    """
    try:
        with open(path, "r", encoding="utf-8") as f:
            lines = f.read().splitlines()
    except OSError as e:
        raise ConfigurationError("Failed to read filter file", context={"path": path}, original_error=e)

    patterns = []
    for line_number, raw in enumerate(lines, start=1):
        line = raw.strip()
        if not line or line.startswith("#"):
            continue
        try:
            patterns.append(compile_pattern(line, use_regex))
        except re.error as e:
            logger.warning(f"Invalid pattern in {path} line {line_number}: {line}",
                          path=path, line_number=line_number, error=str(e))
    return tuple(patterns)


@dataclass(frozen=True)
class IPFilter:
    """Network-range access control"""
    mode: str = "allow_all"
    whitelist: Tuple[IPNetwork, ...] = ()
    blacklist: Tuple[IPNetwork, ...] = ()

    @classmethod
    def from_config(cls, cfg: AccessControlConfig) -> 'IPFilter':
        ip_filter = cls(
            mode=cfg.mode,
            whitelist=parse_networks(cfg.whitelist, "whitelist"),
            blacklist=parse_networks(cfg.blacklist, "blacklist"),
        )
        logger.info(f"IP filters loaded: {len(ip_filter.whitelist)} whitelist, {len(ip_filter.blacklist)} blacklist",
                   mode=ip_filter.mode)
        return ip_filter

    def is_allowed(self, address) -> bool:
        ip = parse_address(address)
        if ip is None:
            return False

        if self.mode == "allow_all":
            return True
        if self.mode == "whitelist":
            return any(ip in network for network in self.whitelist)
        if self.mode == "blacklist":
            return not any(ip in network for network in self.blacklist)
        return False


@dataclass(frozen=True)
class PatternFilter:
    """Allow/deny matching of scope values against rule-file patterns"""
    enabled: bool = False
    whitelist: Tuple[Pattern, ...] = ()
    blacklist: Tuple[Pattern, ...] = ()
    whitelist_overrides: bool = False

    @classmethod
    def from_config(cls, cfg: URLFilterConfig) -> 'PatternFilter':
        if not cfg.enabled:
            return cls(enabled=False)

        whitelist: Tuple[Pattern, ...] = ()
        blacklist: Tuple[Pattern, ...] = ()
        if cfg.whitelist_file:
            whitelist = load_pattern_file(cfg.whitelist_file, cfg.use_regex)
            logger.info(f"Loaded {len(whitelist)} whitelist patterns", path=cfg.whitelist_file)
        if cfg.blacklist_file:
            blacklist = load_pattern_file(cfg.blacklist_file, cfg.use_regex)
            logger.info(f"Loaded {len(blacklist)} blacklist patterns", path=cfg.blacklist_file)

        return cls(
            enabled=True,
            whitelist=whitelist,
            blacklist=blacklist,
            whitelist_overrides=cfg.whitelist_overrides,
        )

    @staticmethod
    def _matches(patterns: Sequence[Pattern], value: str) -> bool:
        return any(pattern.search(value) for pattern in patterns)

    def is_allowed(self, value: str) -> bool:
        if not self.enabled:
            return True

        # An override whitelist is exhaustive
        if self.whitelist_overrides and self.whitelist:
            return self._matches(self.whitelist, value)

        if self._matches(self.blacklist, value):
            return False

        if not self.whitelist:
            return True
        return self._matches(self.whitelist, value)


@dataclass(frozen=True)
class FilterEngine:
    """Immutable rule set built once at startup and shared read-only by request threads"""
    ip_filter: IPFilter = field(default_factory=IPFilter)
    pattern_filter: PatternFilter = field(default_factory=PatternFilter)

    @classmethod
    def from_config(cls, access_control: AccessControlConfig, url_filter: URLFilterConfig) -> 'FilterEngine':
        return cls(
            ip_filter=IPFilter.from_config(access_control),
            pattern_filter=PatternFilter.from_config(url_filter),
        )

    @property
    def mode(self) -> str:
        return self.ip_filter.mode

    def is_origin_allowed(self, caller_address) -> bool:
        allowed = self.ip_filter.is_allowed(caller_address)
        if not allowed:
            logger.filter_rejected("IP", split_host_port(caller_address))
        return allowed

    def is_pattern_allowed(self, value: str) -> bool:
        allowed = self.pattern_filter.is_allowed(value)
        if not allowed:
            logger.filter_rejected("URL", value)
        return allowed

