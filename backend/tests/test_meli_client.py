from unittest.mock import Mock

import httpx
import pytest

from app.jobs.sync.errors import NoCredential, RemoteUnavailable
from app.jobs.sync.sources.base import Credential
from app.jobs.sync.sources.meli.client import MeliCarrierClient
from app.jobs.sync.sources.meli.config import MeliConfig
from app.jobs.sync.sources.meli.http import mask_bearer, make_client

from conftest import FakeTokens


@pytest.fixture
def cfg():
    return MeliConfig(
        base_url="https://api.test",
        connect_timeout=1,
        read_timeout=1,
        write_timeout=1,
        pool_timeout=1,
        retries=3,
        backoff_base=0.0,
    )


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def build(cfg, sleeps):
    clients = []

    def _build(handler, tokens=None, token="tok-a1", limiter=None):
        http = make_client(cfg, transport=httpx.MockTransport(handler))
        clients.append(http)
        tokens = tokens or FakeTokens({"A1": token})
        cred = Credential(account_id="A1", access_token=token)
        return MeliCarrierClient(cfg, http, tokens, cred, limiter=limiter, sleep=sleeps.append)

    yield _build
    for c in clients:
        c.close()


def test_snapshot_sends_bearer_and_returns_json(build):
    seen = {}

    def handler(request):
        seen["path"] = request.url.path
        seen["auth"] = request.headers["authorization"]
        return httpx.Response(200, json={"id": 44, "status": "shipped"})

    client = build(handler)

    assert client.get_snapshot("44") == {"id": 44, "status": "shipped"}
    assert seen == {"path": "/shipments/44", "auth": "Bearer tok-a1"}


def test_not_found_is_none(build):
    client = build(lambda request: httpx.Response(404, json={"message": "not_found"}))

    assert client.get_snapshot("44") is None
    assert client.get_history("44") == []
    assert client.resolve_shipment_id_from_order("O1") is None


def test_history_unwraps_results(build):
    client = build(lambda request: httpx.Response(200, json={"results": [{"status": "shipped"}]}))
    assert client.get_history("44") == [{"status": "shipped"}]


def test_order_resolves_shipping_id(build):
    def handler(request):
        assert request.url.path == "/orders/O1"
        return httpx.Response(200, json={"id": "O1", "shipping": {"id": 9001}})

    assert build(handler).resolve_shipment_id_from_order("O1") == "9001"


def test_retryable_status_backs_off_then_succeeds(build, sleeps):
    responses = iter([httpx.Response(503), httpx.Response(429), httpx.Response(200, json=[])])

    client = build(lambda request: next(responses))

    assert client.get_history("44") == []
    assert len(sleeps) == 2


def test_retries_exhausted_is_remote_unavailable(build, sleeps, cfg):
    calls = []

    def handler(request):
        calls.append(request)
        return httpx.Response(502)

    with pytest.raises(RemoteUnavailable) as exc:
        build(handler).get_snapshot("44")

    assert exc.value.status_code == 502
    assert len(calls) == cfg.retries
    assert len(sleeps) == cfg.retries - 1


def test_timeouts_are_retried(build, sleeps):
    def handler(request):
        raise httpx.ReadTimeout("slow", request=request)

    with pytest.raises(RemoteUnavailable):
        build(handler).get_snapshot("44")
    assert len(sleeps) == 2


def test_client_error_is_not_retried(build, sleeps):
    calls = []

    def handler(request):
        calls.append(request)
        return httpx.Response(400, json={"error": "bad_request"})

    with pytest.raises(RemoteUnavailable) as exc:
        build(handler).get_snapshot("44")

    assert exc.value.status_code == 400
    assert len(calls) == 1
    assert sleeps == []


def test_invalid_json_is_remote_unavailable(build):
    client = build(lambda request: httpx.Response(200, content=b"<html>"))
    with pytest.raises(RemoteUnavailable):
        client.get_snapshot("44")


def test_unauthorized_refreshes_once(build):
    tokens = FakeTokens({"A1": "fresh"})

    def handler(request):
        if request.headers["authorization"] == "Bearer stale":
            return httpx.Response(401)
        return httpx.Response(200, json={"id": 44})

    client = build(handler, tokens=tokens, token="stale")

    assert client.get_snapshot("44") == {"id": 44}
    assert tokens.refreshed == ["A1"]
    assert client.credential.access_token == "fresh"


def test_second_unauthorized_means_no_credential(build):
    tokens = FakeTokens({"A1": "also-rejected"})
    client = build(lambda request: httpx.Response(401), tokens=tokens, token="stale")

    with pytest.raises(NoCredential):
        client.get_snapshot("44")


@pytest.mark.parametrize(
    "value,expected",
    [
        ("Bearer APP_USR-123456789", "Bearer ****6789"),
        ("Bearer abc", "Bearer ****"),
        ("garbage", "****"),
        (None, None),
    ],
)
def test_mask_bearer(value, expected):
    assert mask_bearer(value) == expected


def test_every_retry_takes_a_limiter_slot(build):
    limiter = Mock()
    responses = iter([httpx.Response(429), httpx.Response(503), httpx.Response(200, json={"id": 44})])

    client = build(lambda request: next(responses), limiter=limiter)

    assert client.get_snapshot("44") == {"id": 44}
    assert limiter.acquire.call_count == 3


def test_request_after_refresh_takes_a_limiter_slot(build):
    limiter = Mock()
    tokens = FakeTokens({"A1": "fresh"})

    def handler(request):
        if request.headers["authorization"] == "Bearer stale":
            return httpx.Response(401)
        return httpx.Response(200, json={"id": 44})

    client = build(handler, tokens=tokens, token="stale", limiter=limiter)

    assert client.get_snapshot("44") == {"id": 44}
    assert limiter.acquire.call_count == 2
