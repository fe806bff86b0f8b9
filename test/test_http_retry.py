import asyncio

import httpx
import pytest

from observer.errors import BackendUnavailable
from observer.http_retry import MAX_RETRY_AFTER, post_json_with_retry


class FakeSleep:
    def __init__(self):
        self.delays = []

    async def __call__(self, delay):
        self.delays.append(delay)


def _scripted(*responses):
    """Transport that replays `responses` in order, one per request."""
    queue = list(responses)
    calls = []

    def handler(request):
        calls.append(request)
        return queue.pop(0)

    return httpx.AsyncClient(transport=httpx.MockTransport(handler)), calls


def _post(client, sleep, backoffs=(1.0, 2.0, 4.0)):
    return asyncio.run(
        post_json_with_retry(client, "https://svc/x", {"q": 1}, stage="embed", backoffs=backoffs, sleep=sleep)
    )


def test_success_first_try():
    client, calls = _scripted(httpx.Response(200, json={"ok": True}))
    sleep = FakeSleep()
    assert _post(client, sleep) == {"ok": True}
    assert len(calls) == 1
    assert sleep.delays == []


def test_retry_after_is_honored_and_capped():
    client, calls = _scripted(
        httpx.Response(429, headers={"Retry-After": "3"}),
        httpx.Response(429, headers={"Retry-After": "600"}),
        httpx.Response(429, headers={"Retry-After": "soon"}),
        httpx.Response(200, json=[1, 2]),
    )
    sleep = FakeSleep()
    assert _post(client, sleep) == [1, 2]
    assert sleep.delays == [3.0, MAX_RETRY_AFTER, 4.0]


def test_server_errors_exhaust_the_budget():
    client, calls = _scripted(*[httpx.Response(503) for _ in range(4)])
    sleep = FakeSleep()
    with pytest.raises(BackendUnavailable) as exc:
        _post(client, sleep)
    assert len(calls) == 4
    assert sleep.delays == [1.0, 2.0, 4.0]
    assert exc.value.stage == "embed"
    assert exc.value.details["status"] == 503


def test_client_errors_fail_immediately():
    client, calls = _scripted(httpx.Response(400, text="bad input"))
    sleep = FakeSleep()
    with pytest.raises(BackendUnavailable, match="400"):
        _post(client, sleep)
    assert len(calls) == 1
    assert sleep.delays == []


def test_malformed_json_is_retried():
    client, calls = _scripted(
        httpx.Response(200, content=b'{"data": ['),
        httpx.Response(200, json={"data": []}),
    )
    sleep = FakeSleep()
    assert _post(client, sleep) == {"data": []}
    assert sleep.delays == [1.0]


def test_transport_errors_are_not_retried():
    def handler(request):
        raise httpx.ConnectError("refused", request=request)

    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    with pytest.raises(BackendUnavailable) as exc:
        _post(client, FakeSleep())
    assert isinstance(exc.value.cause, httpx.ConnectError)
