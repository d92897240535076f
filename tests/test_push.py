import io
import json
from urllib.error import HTTPError, URLError

import pytest

import push
from push import FcmClient, PushDeliveryError, build_message
from schemas import PushPayload


class FakeResponse(io.BytesIO):
    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()
        return False


def test_build_message_is_data_only_with_link() -> None:
    message = build_message("tok", PushPayload(title="Bill due", body="Visa 2025-03"))
    assert message == {
        "message": {
            "token": "tok",
            "data": {
                "title": "Bill due",
                "body": "Visa 2025-03",
                "url": "/dashboard",
                "tag": "default",
                "type": "default",
            },
            "webpush": {"fcm_options": {"link": "/dashboard"}},
        }
    }


def test_unconfigured_client_refuses_to_send() -> None:
    client = FcmClient()
    client.project_id = ""
    client.access_token = ""
    with pytest.raises(PushDeliveryError) as exc_info:
        client.send("tok", PushPayload(title="t", body="b"))
    assert exc_info.value.code == "unconfigured"
    assert not exc_info.value.is_invalid_token


def test_send_posts_to_fcm(monkeypatch) -> None:
    captured = {}

    def fake_urlopen(req, timeout):
        captured["url"] = req.full_url
        captured["auth"] = req.get_header("Authorization")
        captured["body"] = json.loads(req.data.decode("utf-8"))
        captured["timeout"] = timeout
        return FakeResponse(b'{"name": "projects/demo/messages/42"}')

    monkeypatch.setattr(push, "urlopen", fake_urlopen)
    client = FcmClient(project_id="demo", access_token="abc", timeout=3)

    name = client.send("tok", PushPayload(title="t", body="b", url="/tasks"))

    assert name == "projects/demo/messages/42"
    assert captured["url"].endswith("/projects/demo/messages:send")
    assert captured["auth"] == "Bearer abc"
    assert captured["body"]["message"]["webpush"]["fcm_options"]["link"] == "/tasks"
    assert captured["timeout"] == 3


def test_unregistered_token_error_is_classified(monkeypatch) -> None:
    body = json.dumps(
        {
            "error": {
                "status": "NOT_FOUND",
                "details": [{"errorCode": "UNREGISTERED"}],
            }
        }
    ).encode("utf-8")

    def fake_urlopen(req, timeout):
        raise HTTPError(req.full_url, 404, "Not Found", {}, io.BytesIO(body))

    monkeypatch.setattr(push, "urlopen", fake_urlopen)
    client = FcmClient(project_id="demo", access_token="abc")

    with pytest.raises(PushDeliveryError) as exc_info:
        client.send("tok", PushPayload(title="t", body="b"))
    assert exc_info.value.code == "UNREGISTERED"
    assert exc_info.value.is_invalid_token


def test_network_errors_are_retryable(monkeypatch) -> None:
    def fake_urlopen(req, timeout):
        raise URLError("connection refused")

    monkeypatch.setattr(push, "urlopen", fake_urlopen)
    client = FcmClient(project_id="demo", access_token="abc")

    with pytest.raises(PushDeliveryError) as exc_info:
        client.send("tok", PushPayload(title="t", body="b"))
    assert exc_info.value.code == "unavailable"
    assert not exc_info.value.is_invalid_token
