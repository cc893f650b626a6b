"""Light client readiness."""

import datetime

import pytest
import requests

from eth_deploy.light_client import LightClientEndpoint, LightClientNotReady, is_light_client_ready, wait_light_client_ready


ENDPOINT = LightClientEndpoint(execution_rpc="http://localhost:8545", consensus_rpc="https://beacon.example.com")


class FakeResponse:
    def __init__(self, data: dict):
        self.data = data

    def raise_for_status(self):
        pass

    def json(self):
        return self.data


class FakeSession:
    """Answers eth_syncing from a script."""

    def __init__(self, answers: list):
        self.answers = list(answers)
        self.calls = 0

    def post(self, url, json, timeout):
        assert json["method"] == "eth_syncing"
        self.calls += 1
        answer = self.answers.pop(0)
        if isinstance(answer, Exception):
            raise answer
        return FakeResponse(answer)


def test_ready():
    assert is_light_client_ready(ENDPOINT, session=FakeSession([{"jsonrpc": "2.0", "id": 1, "result": False}]))


def test_syncing():
    syncing = {"jsonrpc": "2.0", "id": 1, "result": {"startingBlock": "0x0", "currentBlock": "0x10", "highestBlock": "0x20"}}
    assert not is_light_client_ready(ENDPOINT, session=FakeSession([syncing]))


def test_not_up_yet():
    assert not is_light_client_ready(ENDPOINT, session=FakeSession([requests.exceptions.ConnectionError("refused")]))


def test_rpc_error():
    assert not is_light_client_ready(ENDPOINT, session=FakeSession([{"jsonrpc": "2.0", "id": 1, "error": {"code": -32000, "message": "not synced"}}]))


def test_wait_until_ready():
    session = FakeSession(
        [
            requests.exceptions.ConnectionError("refused"),
            {"jsonrpc": "2.0", "id": 1, "result": {"currentBlock": "0x1"}},
            {"jsonrpc": "2.0", "id": 1, "result": False},
        ]
    )
    wait_light_client_ready(ENDPOINT, max_polls=5, poll_delay=datetime.timedelta(0), session=session)
    assert session.calls == 3


def test_wait_gives_up():
    session = FakeSession([{"jsonrpc": "2.0", "id": 1, "result": {"currentBlock": "0x1"}}] * 3)
    with pytest.raises(LightClientNotReady):
        wait_light_client_ready(ENDPOINT, max_polls=3, poll_delay=datetime.timedelta(0), session=session)


def test_endpoint_repr_hides_urls():
    endpoint = LightClientEndpoint(execution_rpc="https://rpc.example.com/secret-api-key", consensus_rpc="https://beacon.example.com")
    assert "secret" not in repr(endpoint)
