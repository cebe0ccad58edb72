"""Device, browser, OS and geo classification for scan analytics.

All user-agent parsing is table driven: each table is an ordered list of
``(pattern, label)`` rules and the first match wins. Order is significant and
must not be rearranged:

::
    DEVICE_RULES   tablet  → mobile            (tablets often also say "mobile")
    BROWSER_RULES  Edge / Samsung / Opera → Firefox → Chrome → Safari → IE
                   (Chromium forks carry "Chrome/", Chrome carries "Safari/")
    OS_RULES       iOS → Android → Windows → macOS → Linux → Chrome OS
                   (iPad UAs mention "Mac", Android UAs mention "Linux")

Request metadata helpers extract geo fields from edge headers and the client IP
from proxy headers; the IP itself is only ever returned hashed.

How to Use
===========
::
    classify_device("Mozilla/5.0 (Linux; Android 13; SM-X700) ...")  # DeviceType.TABLET
    parse_user_agent(ua)          # ParsedUserAgent(browser="Chrome", os="Android")
    hash_ip("203.0.113.9", salt)  # 64-char hex digest
"""

import hashlib
import re
from collections.abc import Mapping
from dataclasses import dataclass

from app.enums import DeviceType

__all__ = [
    "BROWSER_RULES",
    "DEVICE_RULES",
    "OS_RULES",
    "ParsedUserAgent",
    "classify_device",
    "extract_client_ip",
    "extract_geo",
    "hash_ip",
    "parse_browser",
    "parse_os",
    "parse_user_agent",
]


@dataclass(frozen=True)
class Rule:
    pattern: re.Pattern[str]
    label: str

    def matches(self, value: str) -> bool:
        return self.pattern.search(value) is not None


def _rule(pattern: str, label: str) -> Rule:
    return Rule(re.compile(pattern, re.IGNORECASE), label)


DEVICE_RULES: tuple[Rule, ...] = (
    _rule(r"ipad|tablet|playbook|silk|android(?!.*mobile)", DeviceType.TABLET),
    _rule(r"mobile|iphone|ipod|android|blackberry|opera mini|iemobile|wpdesktop", DeviceType.MOBILE),
)

BROWSER_RULES: tuple[Rule, ...] = (
    _rule(r"Edg(?:e|A|iOS)?/\d+", "Edge"),
    _rule(r"SamsungBrowser/\d+", "Samsung Internet"),
    _rule(r"OPR/\d+|Opera/\d+", "Opera"),
    _rule(r"Firefox/\d+", "Firefox"),
    _rule(r"Chrome/\d+", "Chrome"),
    _rule(r"Version/\d+.*Safari/\d+|Safari/\d+.*Version/\d+", "Safari"),
    _rule(r"MSIE|Trident", "Internet Explorer"),
)

OS_RULES: tuple[Rule, ...] = (
    _rule(r"iPhone|iPad|iPod", "iOS"),
    _rule(r"Android", "Android"),
    _rule(r"Windows NT", "Windows"),
    _rule(r"Macintosh|Mac OS X", "macOS"),
    _rule(r"Linux", "Linux"),
    _rule(r"CrOS", "Chrome OS"),
)


def _first_match(rules: tuple[Rule, ...], value: str, default: str) -> str:
    for rule in rules:
        if rule.matches(value):
            return rule.label
    return default


def classify_device(user_agent: str | None) -> DeviceType:
    if not user_agent:
        return DeviceType.UNKNOWN
    return DeviceType(_first_match(DEVICE_RULES, user_agent, DeviceType.DESKTOP))


def parse_browser(user_agent: str) -> str:
    return _first_match(BROWSER_RULES, user_agent, "Other")


def parse_os(user_agent: str) -> str:
    return _first_match(OS_RULES, user_agent, "Other")


@dataclass(frozen=True)
class ParsedUserAgent:
    browser: str
    os: str


def parse_user_agent(user_agent: str | None) -> ParsedUserAgent:
    if not user_agent:
        return ParsedUserAgent(browser="Unknown", os="Unknown")
    return ParsedUserAgent(browser=parse_browser(user_agent), os=parse_os(user_agent))


def extract_geo(headers: Mapping[str, str], country_header: str, city_header: str) -> tuple[str | None, str | None]:
    """Return ``(country, city)`` from edge headers; empty values become None."""
    country = headers.get(country_header) or None
    city = headers.get(city_header) or None
    return country, city


def extract_client_ip(headers: Mapping[str, str]) -> str | None:
    forwarded = headers.get("x-forwarded-for")
    if forwarded:
        first_hop = forwarded.split(",")[0].strip()
        if first_hop:
            return first_hop
    return headers.get("x-real-ip") or None


def hash_ip(ip: str | None, salt: str) -> str | None:
    if not ip:
        return None
    return hashlib.sha256(f"{salt}:{ip}".encode("utf-8")).hexdigest()
