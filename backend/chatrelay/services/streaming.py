"""Streaming transport: forwards provider fragments as raw text and persists what was sent.

Fragments are forwarded verbatim (no SSE `data:` framing). Every fragment is
added to the accumulator before it is yielded, and the accumulated text is
handed to `finalize` on every exit path of the loop: normal exhaustion,
provider failure, deadline expiry, or the consumer going away.
"""

import logging
import time
from collections.abc import AsyncIterator, Awaitable, Callable

import anyio

from chatrelay.core.exceptions import ProviderError

logger = logging.getLogger(__name__)

STREAM_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",  # Disable nginx buffering
}

Finalizer = Callable[[str, bool], Awaitable[None]]


async def relay_fragments(
    fragments: AsyncIterator[str],
    finalize: Finalizer,
    deadline: float | None = None,
    clock: Callable[[], float] = time.monotonic,
) -> AsyncIterator[str]:
    """Yield fragments as they arrive; call finalize(text, completed) on exit.

    `deadline` is an overall wall-clock budget in seconds, checked as each
    fragment arrives. Per-read stalls are bounded by the provider client's
    own timeout.
    """
    parts: list[str] = []
    completed = False
    expires_at = clock() + deadline if deadline else None

    try:
        async for fragment in fragments:
            if expires_at is not None and clock() > expires_at:
                raise ProviderError("Provider stream exceeded its deadline")
            if not fragment:
                continue
            parts.append(fragment)
            yield fragment
        completed = True
    finally:
        text = "".join(parts)
        with anyio.CancelScope(shield=True):
            aclose = getattr(fragments, "aclose", None)
            if aclose is not None:
                try:
                    await aclose()
                except ProviderError as e:
                    logger.warning("Error while closing provider stream: %s", e)
            if not completed:
                logger.warning("Stream ended early after %d characters", len(text))
            await finalize(text, completed)
