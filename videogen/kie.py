"""
Kie.ai task API client (async).

Both synthesis providers are reached through the same task shape:
  POST {base}/jobs/createTask   {"model": ..., "input": {...}}  → data.taskId
  GET  {base}/jobs/recordInfo?taskId=...                        → data.state

Errors are classified for the orchestrator:
  ProviderTimeoutError    — HTTP timeout
  RetryableProviderError  — 429 / 5xx / connection errors / provider busy codes
  FatalProviderError      — any other rejection, or the task itself failed
"""

import os
import json
import random
import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional

import httpx

from .errors import FatalProviderError, ProviderTimeoutError, RetryableProviderError

logger = logging.getLogger(__name__)

# ── Config ────────────────────────────────────────────────────────────────────

KIE_API_KEY = os.environ.get("KIE_API_KEY", "")
KIE_API_BASE = os.environ.get("KIE_API_BASE", "https://api.kie.ai/api/v1")
POLL_INTERVAL = float(os.environ.get("KIE_POLL_INTERVAL", "5"))  # seconds
REQUEST_TIMEOUT = 30.0

# ── Retry configuration ──────────────────────────────────────────────────────
MAX_RETRIES = 3
BASE_DELAY = 2.0       # seconds, doubles each retry: 2, 4, 8
JITTER_MAX = 1.0       # random jitter 0–1s added to each delay
RETRYABLE_STATUS_CODES = {429, 500, 502, 503, 504}
RETRYABLE_API_CODES = {429, 455, 500, 501, 505}  # body-level codes meaning "busy, try later"

ProgressCallback = Callable[[int], Awaitable[None]]


def _result_urls(record: Dict[str, Any]) -> List[str]:
    raw = record.get("resultJson") or "{}"
    try:
        result = json.loads(raw) if isinstance(raw, str) else raw
    except json.JSONDecodeError:
        logger.warning(f"Unparseable resultJson: {raw!r}")
        return []
    return [url for url in result.get("resultUrls", []) if url]


def _progress(record: Dict[str, Any]) -> Optional[int]:
    raw = record.get("progress")
    if raw is None:
        return None
    try:
        return max(0, min(100, int(float(raw))))
    except (TypeError, ValueError):
        return None


class KieClient:
    """
    Usage:
        client = KieClient(provider="image")
        urls = await client.run_task("google/nano-banana", {"prompt": "..."})
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        provider: str = "kie",
        poll_interval: float = POLL_INTERVAL,
        max_retries: int = MAX_RETRIES,
        base_delay: float = BASE_DELAY,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.api_key = api_key or KIE_API_KEY
        self.base_url = (base_url or KIE_API_BASE).rstrip("/")
        self.provider = provider
        self.poll_interval = poll_interval
        self.max_retries = max_retries
        self.base_delay = base_delay
        self._http_client = http_client

    def _get_client(self) -> httpx.AsyncClient:
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(timeout=REQUEST_TIMEOUT)
        return self._http_client

    async def aclose(self):
        if self._http_client is not None:
            await self._http_client.aclose()
            self._http_client = None

    def _delay(self, attempt: int) -> float:
        return self.base_delay * (2 ** attempt) + random.uniform(0, JITTER_MAX) * min(1.0, self.base_delay)

    async def _request(self, method: str, path: str, **kwargs) -> Dict[str, Any]:
        """
        Make one API call, retrying 429/5xx with exponential backoff.
        Returns the `data` object of the response envelope.
        """
        url = f"{self.base_url}{path}"
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }

        for attempt in range(self.max_retries + 1):
            try:
                response = await self._get_client().request(method, url, headers=headers, **kwargs)
            except httpx.TimeoutException as e:
                raise ProviderTimeoutError(f"{self.provider} timed out ({url})", self.provider) from e
            except httpx.TransportError as e:
                if attempt < self.max_retries:
                    delay = self._delay(attempt)
                    logger.warning(
                        f"{self.provider} transport error on attempt {attempt + 1}/{self.max_retries + 1}: {e} "
                        f"— retrying in {delay:.1f}s"
                    )
                    await asyncio.sleep(delay)
                    continue
                raise RetryableProviderError(f"{self.provider} unreachable: {e}", self.provider) from e

            status = response.status_code
            if status in RETRYABLE_STATUS_CODES:
                if attempt < self.max_retries:
                    retry_after = response.headers.get("Retry-After")
                    delay = int(retry_after) if retry_after and retry_after.isdigit() else self._delay(attempt)
                    logger.warning(
                        f"{self.provider} HTTP {status} on attempt {attempt + 1}/{self.max_retries + 1} "
                        f"— retrying in {delay:.1f}s (url={url})"
                    )
                    await asyncio.sleep(delay)
                    continue
                raise RetryableProviderError(f"{self.provider} HTTP {status}", self.provider, status)

            if status >= 400:
                raise FatalProviderError(
                    f"{self.provider} rejected request: HTTP {status} {response.text[:300]}", self.provider, status
                )

            try:
                body = response.json()
            except ValueError as e:
                raise RetryableProviderError(f"{self.provider} returned non-JSON body", self.provider, status) from e

            code = body.get("code", 200)
            if code != 200:
                msg = body.get("msg", "Unknown error")
                if code in RETRYABLE_API_CODES:
                    raise RetryableProviderError(f"{self.provider} busy ({code}): {msg}", self.provider, code)
                raise FatalProviderError(f"{self.provider} API error ({code}): {msg}", self.provider, code)

            return body.get("data") or {}

        raise RetryableProviderError(f"{self.provider} request failed after {self.max_retries + 1} attempts", self.provider)

    async def create_task(self, model: str, input_params: Dict[str, Any], callback_url: Optional[str] = None) -> str:
        body: Dict[str, Any] = {"model": model, "input": input_params}
        if callback_url:
            body["callBackUrl"] = callback_url

        data = await self._request("POST", "/jobs/createTask", json=body)
        task_id = data.get("taskId") or data.get("task_id")
        if not task_id:
            raise FatalProviderError(f"{self.provider} createTask returned no taskId: {data}", self.provider)
        return task_id

    async def get_task(self, task_id: str) -> Dict[str, Any]:
        return await self._request("GET", "/jobs/recordInfo", params={"taskId": task_id})

    async def run_task(
        self,
        model: str,
        input_params: Dict[str, Any],
        on_progress: Optional[ProgressCallback] = None,
    ) -> List[str]:
        """
        Create a task and poll until it succeeds or fails.

        Polls forever; the caller bounds the wait (asyncio.wait_for) and
        cancellation interrupts the in-flight poll.
        """
        task_id = await self.create_task(model, input_params)
        logger.info(f"{self.provider} task created: {task_id} (model={model})")

        last_progress = -1
        while True:
            await asyncio.sleep(self.poll_interval)
            record = await self.get_task(task_id)
            state = record.get("state", "")

            if state == "success":
                urls = _result_urls(record)
                if not urls:
                    raise FatalProviderError(f"{self.provider} task {task_id} succeeded without result URLs", self.provider)
                logger.info(f"{self.provider} task {task_id} succeeded ({len(urls)} result(s))")
                return urls

            if state == "fail":
                reason = record.get("failMsg") or record.get("failCode") or "unknown error"
                raise FatalProviderError(f"{self.provider} task {task_id} failed: {reason}", self.provider)

            progress = _progress(record)
            if on_progress is not None and progress is not None and progress > last_progress:
                last_progress = progress
                await on_progress(progress)
