from __future__ import annotations

import logging

from channelsync.logging import _redact_secrets


def test_tokens_are_masked_in_log_events() -> None:
    event = {
        "event": "providers.request",
        "access_token": "EAAB-secret",
        "partner_token": "partner",
        "page_id": "P1",
    }

    redacted = _redact_secrets(logging.getLogger("test"), "info", event)

    assert redacted["access_token"] == "***"
    assert redacted["partner_token"] == "***"
    assert redacted["page_id"] == "P1"


def test_tokens_in_urls_are_masked() -> None:
    event = {"event": "providers.request.rejected", "url": "https://graph/debug_token?input_token=abc&access_token=x|y"}

    redacted = _redact_secrets(logging.getLogger("test"), "info", event)

    assert redacted["url"] == "https://graph/debug_token?input_token=***&access_token=***"
