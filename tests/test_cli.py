from __future__ import annotations

import json
from typing import Any, Dict, List

import pytest
from typer.testing import CliRunner

from cli.app import app
from cli.client import HistoryResponse
from cli.config import load_config


class StubClient:
    def __init__(self, config, payload: Dict[str, Any] | None = None) -> None:
        self.config = config
        self.calls: List[tuple[str, str, str, Dict[str, Any]]] = []
        self.payload: Dict[str, Any] = payload or {
            "contextResponses": [
                {
                    "contextElement": {
                        "attributes": [
                            {
                                "name": "temperature",
                                "values": [
                                    {"recvTime": "2024-01-01T00:00:00.000Z", "attrType": "Number", "attrValue": 20},
                                ],
                            }
                        ],
                        "id": "room1",
                        "isPattern": False,
                        "type": "Room",
                    },
                    "statusCode": {"code": "200", "reasonPhrase": "OK"},
                },
                {
                    "contextElement": {"attributes": [], "id": "room2", "isPattern": False, "type": "Room"},
                    "statusCode": {"code": "200", "reasonPhrase": "OK"},
                },
            ]
        }
        self.closed = False

    def get_history(self, entity_type: str, entity_id: str, attr_name: str, params: Dict[str, Any]) -> HistoryResponse:
        self.calls.append((entity_type, entity_id, attr_name, params))
        return HistoryResponse(payload=self.payload, total_count=1, correlator="corr-1")

    def close(self) -> None:
        self.closed = True


@pytest.fixture()
def runner() -> CliRunner:
    return CliRunner()


def _install_stub(monkeypatch, stub: StubClient) -> None:
    def factory(config):
        stub.config = config
        return stub

    monkeypatch.setattr("cli.app.ApiClient", factory)


def test_query_renders_canonical_payload(monkeypatch, runner: CliRunner) -> None:
    stub = StubClient(config=None)
    _install_stub(monkeypatch, stub)

    result = runner.invoke(app, ["query", "Room", "room1,room2", "temperature", "--last-n", "5", "--count"])

    assert result.exit_code == 0
    assert "total_count: 1" in result.stdout
    assert "room1 [Room]" in result.stdout
    assert "temperature (1 values)" in result.stdout
    assert "No attributes available." in result.stdout
    entity_type, entity_id, attr_name, params = stub.calls[0]
    assert (entity_type, entity_id, attr_name) == ("Room", "room1,room2", "temperature")
    assert params["lastN"] == 5
    assert params["count"] == "true"
    assert params["nongsi"] is None
    assert stub.closed is True


def test_query_renders_lightweight_rows(monkeypatch, runner: CliRunner) -> None:
    payload = {
        "results": [
            {
                "entityId": "room1",
                "entityType": "Room",
                "attributes": [
                    {
                        "name": "temperature",
                        "fields": ["_id", "firstDate", "attrValue"],
                        "values": [["2024-01-01T10", "2024-01-01T10:05:00.000Z", 15.0]],
                    }
                ],
            }
        ]
    }
    stub = StubClient(config=None, payload=payload)
    _install_stub(monkeypatch, stub)

    result = runner.invoke(
        app,
        ["query", "Room", "room1", "temperature", "--aggr-method", "avg", "--aggr-period", "hour", "--lightweight"],
    )

    assert result.exit_code == 0
    assert "_id=2024-01-01T10" in result.stdout
    assert "attrValue=15.0" in result.stdout
    assert stub.calls[0][3]["nongsi"] == "true"


def test_query_can_print_json(monkeypatch, runner: CliRunner) -> None:
    stub = StubClient(config=None)
    _install_stub(monkeypatch, stub)

    result = runner.invoke(app, ["query", "Room", "room1", "temperature", "--last-n", "1", "--json"])

    assert result.exit_code == 0
    assert json.loads(result.stdout) == stub.payload


def test_tenant_options_reach_the_client_config(monkeypatch, runner: CliRunner) -> None:
    stub = StubClient(config=None)
    _install_stub(monkeypatch, stub)

    result = runner.invoke(
        app,
        ["--service", "smartcity", "--service-path", "/rooms", "query", "Room", "room1", "temperature", "--last-n", "1"],
    )

    assert result.exit_code == 0
    assert stub.config.service == "smartcity"
    assert stub.config.service_path == "/rooms"


def test_load_config_reads_environment(monkeypatch) -> None:
    monkeypatch.setenv("API_BASE_URL", "http://sth.local:8666/")
    monkeypatch.setenv("FIWARE_SERVICE", "envservice")
    monkeypatch.setenv("CLI_REQUEST_TIMEOUT", "not-a-number")

    config = load_config()

    assert config.base_url == "http://sth.local:8666"
    assert config.service == "envservice"
    assert config.timeout == 30.0
