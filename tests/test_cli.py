from __future__ import annotations

import httpx
from typer.testing import CliRunner

from channelsync.cli import main as cli

runner = CliRunner()


def _mock_client(monkeypatch, handler) -> list[httpx.Request]:
    seen: list[httpx.Request] = []

    def record(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return handler(request)

    monkeypatch.setattr(
        cli,
        "_get_client",
        lambda base_url, api_key: httpx.Client(
            base_url=base_url,
            headers={"X-API-Key": api_key} if api_key else {},
            transport=httpx.MockTransport(record),
        ),
    )
    return seen


def test_channels_lists_warnings(monkeypatch) -> None:
    channel = {
        "id": "3f2a9c1e-0000",
        "owner_id": "user-1",
        "type": "whatsapp",
        "is_connected": True,
        "config": {"resource_id": "PN-1"},
        "warnings": ["Webhook Pending"],
    }
    seen = _mock_client(monkeypatch, lambda request: httpx.Response(200, json={"channels": [channel]}))

    result = runner.invoke(cli.app, ["channels", "--owner", "user-1", "--api-key", "k"])

    assert result.exit_code == 0
    assert "Webhook" in result.output
    assert seen[0].url.params["owner_id"] == "user-1"
    assert seen[0].headers["X-API-Key"] == "k"


def test_provision_reports_api_errors(monkeypatch) -> None:
    _mock_client(
        monkeypatch,
        lambda request: httpx.Response(400, json={"error": "ValidationError", "detail": "State expired"}),
    )

    result = runner.invoke(cli.app, ["provision", "facebook", "--state", "old", "--code", "c"])

    assert result.exit_code == 1
    assert "State expired" in result.output


def test_unknown_channel_type_is_rejected(monkeypatch) -> None:
    seen = _mock_client(monkeypatch, lambda request: httpx.Response(200, json={}))

    result = runner.invoke(cli.app, ["auth-url", "telegram", "--owner", "user-1"])

    assert result.exit_code == 1
    assert seen == []
