from __future__ import annotations

import asyncio
import json
from pathlib import Path

import httpx
import pytest

from merchantsync.config import Settings
from merchantsync.notify.telegram import (
    IMPORT_COMPLETE_TEMPLATE,
    UNMAPPED_TEMPLATE,
    LogNotifier,
    TelegramNotifier,
    build_notifier,
    render_text,
)


_ENV_KEYS = [
    "MSYNC_DB_PATH",
    "MSYNC_API_KEY",
    "MSYNC_SERVICE_ACCOUNT_JSON",
    "MSYNC_PLAN_TIER",
    "MSYNC_NOTIFY_UNMAPPED",
    "MSYNC_NOTIFY_IMPORT",
    "TELEGRAM_BOT_TOKEN",
    "TELEGRAM_CHAT_ID",
]


@pytest.fixture
def clean_env(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> pytest.MonkeyPatch:
    # Settings.load reads a .env from the working directory.
    monkeypatch.chdir(tmp_path)
    for key in _ENV_KEYS:
        monkeypatch.delenv(key, raising=False)
    return monkeypatch


def test_settings_defaults(clean_env: pytest.MonkeyPatch) -> None:
    s = Settings.load()

    assert s.plan_tier == "free"
    assert s.api_key is None
    assert s.service_account_json is None
    assert s.notify_unmapped is True
    assert s.notify_import is True
    assert isinstance(build_notifier(s), LogNotifier)


def test_settings_unknown_tier_falls_back_to_free(clean_env: pytest.MonkeyPatch) -> None:
    clean_env.setenv("MSYNC_PLAN_TIER", "Enterprise")
    assert Settings.load().plan_tier == "free"

    clean_env.setenv("MSYNC_PLAN_TIER", " Premium ")
    assert Settings.load().plan_tier == "premium"


def test_service_account_inline_or_file(clean_env: pytest.MonkeyPatch, tmp_path: Path) -> None:
    clean_env.setenv("MSYNC_SERVICE_ACCOUNT_JSON", ' {"type": "service_account"} ')
    assert Settings.load().service_account_json == '{"type": "service_account"}'

    key_file = tmp_path / "sa.json"
    key_file.write_text('{"type": "from-file"}', encoding="utf-8")
    clean_env.setenv("MSYNC_SERVICE_ACCOUNT_JSON", str(key_file))
    assert Settings.load().service_account_json == '{"type": "from-file"}'

    clean_env.setenv("MSYNC_SERVICE_ACCOUNT_JSON", str(tmp_path / "missing.json"))
    assert Settings.load().service_account_json is None


def test_notify_flags_and_telegram_selection(clean_env: pytest.MonkeyPatch) -> None:
    clean_env.setenv("MSYNC_NOTIFY_UNMAPPED", "off")
    clean_env.setenv("MSYNC_NOTIFY_IMPORT", "yes")
    clean_env.setenv("TELEGRAM_BOT_TOKEN", "123:abc")
    clean_env.setenv("TELEGRAM_CHAT_ID", "-1001")

    s = Settings.load()

    assert s.notify_unmapped is False
    assert s.notify_import is True
    notifier = build_notifier(s)
    assert isinstance(notifier, TelegramNotifier)
    assert notifier.chat_id == -1001


def test_render_unmapped_truncates_long_lists() -> None:
    products = [{"product_id": f"x{i}", "product_name": "", "sku": ""} for i in range(25)]
    text = render_text(UNMAPPED_TEMPLATE, {"count": 25, "products": products})

    assert text.splitlines()[0] == "Merchant alert: 25 unmapped product(s) detected"
    assert "- x0: (no title)" in text
    assert "x20" not in text
    assert text.endswith("... and 5 more")


def test_telegram_notifier_posts_message() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"ok": True})

    notifier = TelegramNotifier(token="123:abc", chat_id=42, transport=httpx.MockTransport(handler))
    data = {"progress": {"current_batch": 9, "total_batches": 9, "products_processed": 18}}

    assert asyncio.run(notifier.notify(IMPORT_COMPLETE_TEMPLATE, data)) is True
    [req] = seen
    assert req.url.path == "/bot123:abc/sendMessage"
    body = json.loads(req.content)
    assert body["chat_id"] == 42
    assert "products processed: 18" in body["text"]


def test_telegram_failure_returns_false() -> None:
    notifier = TelegramNotifier(
        token="123:abc",
        chat_id=42,
        transport=httpx.MockTransport(lambda request: httpx.Response(502, text="bad gateway")),
    )

    assert asyncio.run(notifier.notify(UNMAPPED_TEMPLATE, {"count": 0, "products": []})) is False
