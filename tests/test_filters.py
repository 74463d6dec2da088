"""Tests for origin and pattern filtering."""

import pytest

from config import AccessControlConfig, URLFilterConfig
from exceptions import ConfigurationError
from filters import (FilterEngine, IPFilter, PatternFilter, compile_pattern, load_pattern_file,
                     parse_address, parse_networks, split_host_port)


def pattern_filter(allow=(), deny=(), overrides=False, enabled=True) -> PatternFilter:
    return PatternFilter(
        enabled=enabled,
        whitelist=tuple(compile_pattern(p) for p in allow),
        blacklist=tuple(compile_pattern(p) for p in deny),
        whitelist_overrides=overrides,
    )


# ==================== Address Parsing Tests ====================


@pytest.mark.parametrize(
    "address, expected",
    [
        ("127.0.0.1", "127.0.0.1"),
        ("127.0.0.1:8080", "127.0.0.1"),
        ("[::1]:443", "::1"),
        ("::1", "::1"),
        ("fe80::1", "fe80::1"),
        (("10.0.0.5", 1234), "10.0.0.5"),
        (("::1", 8765, 0, 0), "::1"),
    ],
)
def test_split_host_port(address, expected):
    """Test host extraction for both address families."""
    assert split_host_port(address) == expected


def test_parse_address_normalizes_ipv4_mapped():
    """Test IPv4-mapped IPv6 addresses are treated as IPv4."""
    assert str(parse_address("::ffff:127.0.0.1")) == "127.0.0.1"


@pytest.mark.parametrize("address", ["", "garbage", "300.1.1.1", "[::1", "1.2.3.4.5:80", None])
def test_parse_address_rejects_malformed(address):
    """Test malformed caller addresses do not parse."""
    assert parse_address(address) is None


def test_parse_networks_skips_invalid_entries():
    """Test invalid CIDR entries are reported and skipped."""
    networks = parse_networks(["10.0.0.0/8", "not-an-ip", "192.168.1.7", "::1"], "whitelist")

    assert [str(n) for n in networks] == ["10.0.0.0/8", "192.168.1.7/32", "::1/128"]


# ==================== IP Filter Tests ====================


def test_allow_all_mode_allows_everything_parseable():
    """Test allow_all mode accepts any valid address."""
    ip_filter = IPFilter(mode="allow_all")

    assert ip_filter.is_allowed("8.8.8.8")
    assert ip_filter.is_allowed("[2001:db8::1]:9000")
    assert not ip_filter.is_allowed("nonsense")


def test_whitelist_mode():
    """Test whitelist mode is default-deny."""
    ip_filter = IPFilter.from_config(AccessControlConfig(mode="whitelist", whitelist=["127.0.0.1", "192.168.0.0/16"]))

    assert ip_filter.is_allowed("127.0.0.1")
    assert ip_filter.is_allowed("192.168.44.2:5000")
    assert not ip_filter.is_allowed("10.0.0.5")
    assert not ip_filter.is_allowed("::1")
    assert not ip_filter.is_allowed("not-an-address")


def test_whitelist_mode_with_empty_list_denies_all():
    """Test an empty whitelist lets nothing through."""
    ip_filter = IPFilter(mode="whitelist")

    assert not ip_filter.is_allowed("127.0.0.1")


def test_blacklist_mode():
    """Test blacklist mode is default-allow."""
    ip_filter = IPFilter.from_config(AccessControlConfig(mode="blacklist", blacklist=["10.0.0.0/8", "::1"]))

    assert ip_filter.is_allowed("127.0.0.1")
    assert not ip_filter.is_allowed("10.1.2.3")
    assert not ip_filter.is_allowed("[::1]:8080")
    assert not ip_filter.is_allowed("bogus")


def test_unknown_mode_denies():
    """Test an unrecognised mode never allows."""
    assert not IPFilter(mode="sometimes").is_allowed("127.0.0.1")


# ==================== Pattern Compilation Tests ====================


def test_glob_pattern_is_anchored():
    """Test glob patterns must match the whole value."""
    pattern = compile_pattern("example.com")

    assert pattern.search("example.com")
    assert not pattern.search("notexample.com")
    assert not pattern.search("example.com.evil.net")
    assert not pattern.search("exampleXcom")


def test_glob_wildcard_matches_any_substring():
    """Test * matches any run of characters, including none."""
    pattern = compile_pattern("*.example.com")

    assert pattern.search("login.example.com")
    assert pattern.search("a.b.example.com")
    assert not pattern.search("example.com")


def test_regex_pattern_searches():
    """Test regex mode uses the line as an unanchored regex."""
    pattern = compile_pattern(r"bank\d+", use_regex=True)

    assert pattern.search("https://bank42.test/login")


def test_load_pattern_file_skips_blank_and_comment_lines(tmp_path):
    """Test blank lines and comments are ignored."""
    rules = tmp_path / "rules.txt"
    rules.write_text("# comment\n\n  *.example.com  \n   # indented comment\nexample.org\n")

    patterns = load_pattern_file(str(rules))

    assert len(patterns) == 2
    assert patterns[0].search("www.example.com")
    assert patterns[1].search("example.org")


def test_load_pattern_file_skips_malformed_regex_lines(tmp_path):
    """Test a bad regex line is skipped while the rest still loads."""
    rules = tmp_path / "rules.txt"
    rules.write_text("good\\.com\n([unclosed\nalso-good\n")

    patterns = load_pattern_file(str(rules), use_regex=True)

    assert len(patterns) == 2


def test_load_pattern_file_missing_is_fatal(tmp_path):
    """Test an unreadable rule file is a configuration error."""
    with pytest.raises(ConfigurationError):
        load_pattern_file(str(tmp_path / "missing.txt"))


# ==================== Pattern Filter Tests ====================


def test_disabled_pattern_filter_allows_everything():
    """Test a disabled filter never rejects."""
    assert pattern_filter(deny=["*"], enabled=False).is_allowed("anything")


def test_blacklist_only_defaults_to_allow():
    """Test a value matching no blacklist pattern is allowed when there is no whitelist."""
    pf = pattern_filter(deny=["*bank*"])

    assert pf.is_allowed("example.com")
    assert not pf.is_allowed("mybank.com")


def test_whitelist_without_override_must_match():
    """Test a non-override whitelist still has to match after the blacklist passes."""
    pf = pattern_filter(allow=["*.example.com"], deny=["*bank*"])

    assert pf.is_allowed("www.example.com")
    assert not pf.is_allowed("other.org")
    assert not pf.is_allowed("bank.example.com")


def test_override_whitelist_wins_over_blacklist():
    """Test a value matching both lists is allowed in override mode."""
    pf = pattern_filter(allow=["bank.example.com"], deny=["*bank*"], overrides=True)

    assert pf.is_allowed("bank.example.com")


def test_override_whitelist_is_exhaustive():
    """Test nothing outside an override whitelist passes."""
    pf = pattern_filter(allow=["*.example.com"], deny=["*bank*"], overrides=True)

    assert not pf.is_allowed("other.org")
    assert not pf.is_allowed("mybank.com")


def test_override_without_whitelist_falls_back_to_blacklist():
    """Test override mode with no whitelist behaves like a plain blacklist."""
    pf = pattern_filter(deny=["*bank*"], overrides=True)

    assert pf.is_allowed("example.com")
    assert not pf.is_allowed("mybank.com")


def test_pattern_filter_from_config(tmp_path):
    """Test rule files are loaded from configuration."""
    allow = tmp_path / "allow.txt"
    deny = tmp_path / "deny.txt"
    allow.write_text("secure.bank.com\n")
    deny.write_text("*bank*\n")

    pf = PatternFilter.from_config(URLFilterConfig(
        enabled=True,
        whitelist_file=str(allow),
        blacklist_file=str(deny),
        whitelist_overrides=False,
    ))

    assert pf.enabled
    assert not pf.is_allowed("secure.bank.com")
    assert not pf.is_allowed("example.com")


# ==================== Filter Engine Tests ====================


def test_filter_engine_is_immutable():
    """Test compiled rules cannot be swapped after construction."""
    engine = FilterEngine()

    with pytest.raises(AttributeError):
        engine.ip_filter = IPFilter(mode="whitelist")


def test_filter_engines_are_isolated(tmp_path):
    """Test separately built engines do not share rule state."""
    open_engine = FilterEngine.from_config(AccessControlConfig(mode="allow_all"), URLFilterConfig())
    closed_engine = FilterEngine.from_config(AccessControlConfig(mode="whitelist", whitelist=["10.0.0.1"]),
                                             URLFilterConfig())

    assert open_engine.is_origin_allowed("127.0.0.1:1234")
    assert not closed_engine.is_origin_allowed("127.0.0.1:1234")
    assert closed_engine.is_origin_allowed(("10.0.0.1", 1234))
