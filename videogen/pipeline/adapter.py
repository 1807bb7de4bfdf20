"""
Contract shared by the image and video providers.

An adapter turns one set of phase parameters into one result URL. It raises
RetryableProviderError / ProviderTimeoutError for transient failures and
FatalProviderError for rejections; it never touches credits or the job store.
The caller bounds each call with a deadline and may cancel it.
"""

from typing import Any, Awaitable, Callable, Optional, Protocol

ProgressCallback = Callable[[int], Awaitable[None]]


class ProviderAdapter(Protocol):
    name: str

    async def invoke(self, params: Any, on_progress: Optional[ProgressCallback] = None) -> str: ...
