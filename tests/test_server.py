"""Tests for the REST API."""

from unittest.mock import AsyncMock, Mock

import pytest
from fastapi.testclient import TestClient

from pbxlive import server
from pbxlive.channels import AsteriskChannel
from pbxlive.errors import ManagerTimeoutError
from pbxlive.queues import AsteriskQueue


@pytest.fixture
def client():
    # no context manager: the lifespan would try to reach a real AMI
    return TestClient(server.app)


@pytest.fixture
def auth():
    return {"Authorization": f"Bearer {server.create_access_token('tester')}"}


@pytest.fixture
def ami(monkeypatch):
    channel = AsteriskChannel(id='1.1', name='SIP/100-0001', state='Up', caller_id_number='100')
    mock = Mock()
    mock.connection.is_connected.return_value = True
    mock.get_channels.return_value = [channel]
    mock.get_channel_by_id.side_effect = lambda uid: channel if uid == '1.1' else None
    mock.get_queues.return_value = [AsteriskQueue('support', strategy='ringall')]
    mock.get_version = AsyncMock(return_value='Asterisk 1.4.21')
    mock.get_file_version = AsyncMock(side_effect=lambda f: (1, 234) if f == 'chan_sip.c' else None)
    mock.originate_to_extension = AsyncMock(return_value=channel)
    mock.originate_to_application = AsyncMock(return_value=None)
    monkeypatch.setattr(server, 'manager', mock)
    return mock


def test_requires_token(client, ami):
    assert client.get("/api/channels").status_code == 401
    assert client.get("/api/channels", headers={"Authorization": "Bearer nope"}).status_code == 401


def test_unavailable_without_manager(client, auth, monkeypatch):
    monkeypatch.setattr(server, 'manager', None)

    assert client.get("/api/channels", headers=auth).status_code == 503
    assert client.get("/api/status", headers=auth).json() == {
        "connected": False, "active_calls": 0, "queues": 0,
    }


def test_status(client, auth, ami):
    assert client.get("/api/status", headers=auth).json() == {
        "connected": True, "active_calls": 1, "queues": 1,
    }


def test_channels(client, auth, ami):
    body = client.get("/api/channels", headers=auth).json()

    assert [c["id"] for c in body["channels"]] == ['1.1']
    assert body["channels"][0]["callerid"] == '100'


def test_channel_by_id(client, auth, ami):
    assert client.get("/api/channels/1.1", headers=auth).json()["channel"]["name"] == 'SIP/100-0001'
    assert client.get("/api/channels/9.9", headers=auth).status_code == 404


def test_queues(client, auth, ami):
    body = client.get("/api/queues", headers=auth).json()

    assert body["queues"]["support"]["strategy"] == 'ringall'


def test_versions(client, auth, ami):
    assert client.get("/api/version", headers=auth).json() == {"version": 'Asterisk 1.4.21'}
    assert client.get("/api/version/chan_sip.c", headers=auth).json() == {
        "file": 'chan_sip.c', "revision": [1, 234],
    }
    assert client.get("/api/version/missing.c", headers=auth).status_code == 404


def test_originate_to_extension(client, auth, ami):
    resp = client.post("/api/originate", headers=auth, json={
        "channel": "SIP/100", "context": "default", "exten": "200", "timeout": 5000,
    })

    assert resp.status_code == 200
    assert resp.json()["channel"]["id"] == '1.1'
    ami.originate_to_extension.assert_awaited_once_with('SIP/100', 'default', '200', 1, 5000, {})


def test_originate_not_answered(client, auth, ami):
    resp = client.post("/api/originate", headers=auth, json={
        "channel": "SIP/100", "application": "Playback", "data": "hello-world",
    })

    assert resp.json() == {"channel": None}
    ami.originate_to_application.assert_awaited_once_with('SIP/100', 'Playback', 'hello-world', 30000, {})


@pytest.mark.parametrize('body', [
    {"channel": "SIP/100"},
    {"channel": "SIP/100", "context": "default", "exten": "200", "application": "Echo"},
])
def test_originate_needs_one_target(client, auth, ami, body):
    assert client.post("/api/originate", headers=auth, json=body).status_code == 400


def test_originate_timeout(client, auth, ami):
    ami.originate_to_extension.side_effect = ManagerTimeoutError("Timeout waiting for a pooled connection")

    resp = client.post("/api/originate", headers=auth, json={
        "channel": "SIP/100", "context": "default", "exten": "200",
    })

    assert resp.status_code == 504


class TestLogin:

    @pytest.fixture(autouse=True)
    def credentials(self, monkeypatch):
        monkeypatch.setenv("API_USERNAME", "admin")
        monkeypatch.setenv("API_PASSWORD", "s3cret")

    def test_issues_usable_token(self, client, ami):
        resp = client.post("/api/auth/login", json={"username": "admin", "password": "s3cret"})

        assert resp.status_code == 200
        body = resp.json()
        assert body["token_type"] == "bearer"
        assert server.decode_token(body["access_token"])["sub"] == "admin"

        headers = {"Authorization": f"Bearer {body['access_token']}"}
        assert client.get("/api/channels", headers=headers).status_code == 200

    def test_wrong_password(self, client):
        resp = client.post("/api/auth/login", json={"username": "admin", "password": "nope"})
        assert resp.status_code == 401

    def test_missing_fields(self, client):
        resp = client.post("/api/auth/login", json={"username": "", "password": ""})
        assert resp.status_code == 400

    def test_disabled_without_configured_credentials(self, client, monkeypatch):
        monkeypatch.delenv("API_PASSWORD")

        resp = client.post("/api/auth/login", json={"username": "admin", "password": "s3cret"})
        assert resp.status_code == 401
