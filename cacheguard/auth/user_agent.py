"""Best-effort User-Agent parsing into operating system and browser labels."""

from __future__ import annotations

import re

_OS_PATTERNS: list[tuple[re.Pattern[str], str]] = [
    (re.compile(r"Windows NT 10"), "Windows 10/11"),
    (re.compile(r"Windows NT 6\.3"), "Windows 8.1"),
    (re.compile(r"Windows NT 6\.1"), "Windows 7"),
    (re.compile(r"Windows"), "Windows"),
    (re.compile(r"iPhone|iPad|iPod"), "iOS"),
    (re.compile(r"Android"), "Android"),
    (re.compile(r"CrOS"), "ChromeOS"),
    (re.compile(r"Mac OS X|Macintosh"), "macOS"),
    (re.compile(r"Linux"), "Linux"),
]

# Order matters: Edge and Opera carry a Chrome token, Chrome carries Safari.
_BROWSER_PATTERNS: list[tuple[re.Pattern[str], str]] = [
    (re.compile(r"Edg(?:e|A|iOS)?/(\d+)"), "Edge"),
    (re.compile(r"OPR/(\d+)"), "Opera"),
    (re.compile(r"Firefox/(\d+)"), "Firefox"),
    (re.compile(r"FxiOS/(\d+)"), "Firefox"),
    (re.compile(r"CriOS/(\d+)"), "Chrome"),
    (re.compile(r"Chrome/(\d+)"), "Chrome"),
    (re.compile(r"Version/(\d+).*Safari/"), "Safari"),
    (re.compile(r"curl/(\d+)"), "curl"),
]


def parse_user_agent(user_agent: str | None) -> tuple[str | None, str | None]:
    """Return ``(operating_system, browser)`` labels, ``None`` when unknown."""
    if not user_agent:
        return None, None

    operating_system = None
    for pattern, label in _OS_PATTERNS:
        if pattern.search(user_agent):
            operating_system = label
            break

    browser = None
    for pattern, label in _BROWSER_PATTERNS:
        match = pattern.search(user_agent)
        if match:
            browser = f"{label} {match.group(1)}"
            break

    return operating_system, browser
