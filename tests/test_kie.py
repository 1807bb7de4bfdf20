"""Kie.ai task client against httpx.MockTransport: polling, progress and error classification."""

import json

import httpx
import pytest

from videogen.errors import FatalProviderError, ProviderTimeoutError, RetryableProviderError
from videogen.kie import KieClient

BASE = "https://kie.test/api/v1"


def _client(handler, **kwargs) -> KieClient:
    http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    kwargs.setdefault("poll_interval", 0)
    kwargs.setdefault("base_delay", 0)
    return KieClient(api_key="test-key", base_url=BASE, provider="video", http_client=http, **kwargs)


def _created(task_id="task-1"):
    return httpx.Response(200, json={"code": 200, "msg": "success", "data": {"taskId": task_id}})


def _record(state, **fields):
    return httpx.Response(200, json={"code": 200, "data": {"taskId": "task-1", "state": state, **fields}})


def _success(*urls):
    return _record("success", resultJson=json.dumps({"resultUrls": list(urls)}))


class Script:
    """Serves scripted responses per path; records requests."""

    def __init__(self, create=None, polls=None):
        self.create = list(create or [_created()])
        self.polls = list(polls or [])
        self.requests = []

    def __call__(self, request: httpx.Request):
        self.requests.append(request)
        queue = self.create if request.url.path.endswith("/jobs/createTask") else self.polls
        item = queue.pop(0)
        if isinstance(item, Exception):
            raise item
        return item


# ---------------------------------------------------------------------------
# Happy path
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_run_task_polls_until_success_and_reports_progress():
    script = Script(polls=[
        _record("waiting"),
        _record("generating", progress=40),
        _record("generating", progress=40),
        _record("generating", progress="75.5"),
        _success("https://cdn.test/v.mp4"),
    ])
    seen = []

    async def on_progress(p):
        seen.append(p)

    urls = await _client(script).run_task("kling/v2-1-pro", {"prompt": "p"}, on_progress=on_progress)

    assert urls == ["https://cdn.test/v.mp4"]
    assert seen == [40, 75]


@pytest.mark.asyncio
async def test_create_task_sends_model_input_and_auth():
    script = Script(polls=[_success("https://cdn.test/a.png")])

    await _client(script).run_task("google/nano-banana", {"prompt": "cat"})

    create = script.requests[0]
    assert create.method == "POST"
    assert create.headers["Authorization"] == "Bearer test-key"
    assert json.loads(create.content) == {"model": "google/nano-banana", "input": {"prompt": "cat"}}

    poll = script.requests[1]
    assert poll.method == "GET"
    assert poll.url.params["taskId"] == "task-1"


# ---------------------------------------------------------------------------
# Failures
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_failed_task_is_fatal():
    script = Script(polls=[_record("fail", failMsg="content policy")])

    with pytest.raises(FatalProviderError, match="content policy"):
        await _client(script).run_task("m", {})


@pytest.mark.asyncio
async def test_success_without_urls_is_fatal():
    script = Script(polls=[_record("success", resultJson=json.dumps({"resultUrls": []}))])

    with pytest.raises(FatalProviderError):
        await _client(script).run_task("m", {})


@pytest.mark.asyncio
async def test_server_error_is_retried():
    script = Script(create=[httpx.Response(500), httpx.Response(502), _created()], polls=[_success("u")])

    assert await _client(script, max_retries=2).run_task("m", {}) == ["u"]


@pytest.mark.asyncio
async def test_retry_after_header_is_honoured():
    script = Script(create=[httpx.Response(429, headers={"Retry-After": "0"}), _created()], polls=[_success("u")])

    assert await _client(script, max_retries=1).run_task("m", {}) == ["u"]


@pytest.mark.asyncio
async def test_server_errors_exhausted_are_retryable():
    script = Script(create=[httpx.Response(503)] * 3)

    with pytest.raises(RetryableProviderError) as exc:
        await _client(script, max_retries=2).create_task("m", {})
    assert exc.value.status_code == 503


@pytest.mark.asyncio
async def test_client_error_is_fatal():
    script = Script(create=[httpx.Response(400, text="bad input")])

    with pytest.raises(FatalProviderError):
        await _client(script).create_task("m", {})


@pytest.mark.asyncio
async def test_envelope_error_codes_are_classified():
    busy = Script(create=[httpx.Response(200, json={"code": 455, "msg": "service unavailable"})])
    with pytest.raises(RetryableProviderError):
        await _client(busy).create_task("m", {})

    broke = Script(create=[httpx.Response(200, json={"code": 402, "msg": "insufficient balance"})])
    with pytest.raises(FatalProviderError):
        await _client(broke).create_task("m", {})


@pytest.mark.asyncio
async def test_timeout_is_distinguishable():
    script = Script(create=[httpx.ReadTimeout("slow")])

    with pytest.raises(ProviderTimeoutError):
        await _client(script).create_task("m", {})


@pytest.mark.asyncio
async def test_connection_errors_are_retryable():
    script = Script(create=[httpx.ConnectError("refused"), httpx.ConnectError("refused")])

    with pytest.raises(RetryableProviderError):
        await _client(script, max_retries=1).create_task("m", {})
    assert len(script.requests) == 2


@pytest.mark.asyncio
async def test_missing_task_id_is_fatal():
    script = Script(create=[httpx.Response(200, json={"code": 200, "data": {}})])

    with pytest.raises(FatalProviderError):
        await _client(script).create_task("m", {})
