from __future__ import annotations

import pytest

from cacheguard.auth.user_agent import parse_user_agent


@pytest.mark.parametrize(
    ("user_agent", "expected"),
    [
        (
            "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
            "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36",
            ("Windows 10/11", "Chrome 120"),
        ),
        (
            "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
            "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36 Edg/120.0.2210.91",
            ("Windows 10/11", "Edge 120"),
        ),
        (
            "Mozilla/5.0 (Macintosh; Intel Mac OS X 14_2) AppleWebKit/605.1.15 "
            "(KHTML, like Gecko) Version/17.2 Safari/605.1.15",
            ("macOS", "Safari 17"),
        ),
        (
            "Mozilla/5.0 (iPhone; CPU iPhone OS 17_2 like Mac OS X) AppleWebKit/605.1.15 "
            "(KHTML, like Gecko) Version/17.2 Mobile/15E148 Safari/604.1",
            ("iOS", "Safari 17"),
        ),
        (
            "Mozilla/5.0 (X11; Linux x86_64; rv:121.0) Gecko/20100101 Firefox/121.0",
            ("Linux", "Firefox 121"),
        ),
        ("curl/8.4.0", (None, "curl 8")),
    ],
)
def test_parse_user_agent(user_agent: str, expected: tuple[str | None, str | None]) -> None:
    assert parse_user_agent(user_agent) == expected


def test_parse_user_agent_handles_missing_value() -> None:
    assert parse_user_agent(None) == (None, None)
    assert parse_user_agent("") == (None, None)
