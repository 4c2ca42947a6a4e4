"""
Shared fixtures for NFC-e worker tests.

Strategy:
- No network: portal tests patch the httpx client's get/post
- Saved portal pages live under tests/fixtures/
- Settings get test-safe defaults before any nfce module is imported
"""

from __future__ import annotations

import os

# Set env vars BEFORE any nfce module is imported; settings is built at import.
os.environ.setdefault("NFCE_RATE_LIMIT_SECONDS", "0")
os.environ.setdefault("NFCE_CAPTCHA_MAX_ATTEMPTS", "3")

from pathlib import Path

import httpx
import pytest

FIXTURES_DIR = Path(__file__).parent / "fixtures"

VALID_KEY = "29250306057223031484650140003829591141073162"
BASE_URL = "https://nfe.test.sefaz.ba.gov.br"


def load_fixture(name: str) -> str:
    return (FIXTURES_DIR / name).read_text(encoding="utf-8")


def html_response(body: str, status_code: int = 200, method: str = "GET", path: str = "/") -> httpx.Response:
    """httpx.Response carrying an HTML body, as the portal returns it."""
    return httpx.Response(
        status_code,
        text=body,
        headers={"content-type": "text/html; charset=utf-8"},
        request=httpx.Request(method, f"{BASE_URL}{path}"),
    )


def image_response(data: bytes = b"\x89PNG\r\n\x1a\nfake-captcha") -> httpx.Response:
    return httpx.Response(
        200,
        content=data,
        headers={"content-type": "image/png"},
        request=httpx.Request("GET", f"{BASE_URL}/captcha"),
    )


# ── Portal pages ──────────────────────────────────────────


@pytest.fixture
def access_key_page() -> str:
    return load_fixture("access_key_page.html")


@pytest.fixture
def danfe_page() -> str:
    return load_fixture("danfe.html")


@pytest.fixture
def nfe_tab_page() -> str:
    return load_fixture("nfe_tab.html")


@pytest.fixture
def products_tab_page() -> str:
    return load_fixture("products_tab.html")


@pytest.fixture
def valid_key() -> str:
    return VALID_KEY
