import asyncio
import codecs
import json
import time
import uuid
from dataclasses import dataclass
from typing import Any, AsyncIterator, Awaitable, Callable, List, Optional, Tuple

from .chat_payload import DEEPSEARCH_MODEL, REASONING_MODEL, SEARCH_MODELS
from .console import debug_print
from .errors import RateLimited, UpstreamProtocolError

SSE_KEEPALIVE = ": keep-alive\n\n"
SSE_DONE = "data: [DONE]\n\n"

THINK_OPEN = "<think>"
THINK_CLOSE = "</think>"
KEEPALIVE_MESSAGE = "Processing, please wait..."

ImageHost = Callable[[str], Awaitable[str]]

_TOKEN = "token"
_IMAGE = "image"
_HEARTBEAT = "heartbeat"


# ============================================================
# RESPONSE BUILDERS
# ============================================================


def build_chat_chunk(content: str, model: str) -> dict:
    return {
        "id": f"chatcmpl-{uuid.uuid4()}",
        "object": "chat.completion.chunk",
        "created": int(time.time()),
        "model": model,
        "choices": [{"index": 0, "delta": {"content": content}}],
    }


def build_chat_completion(content: str, model: str) -> dict:
    return {
        "id": f"chatcmpl-{uuid.uuid4()}",
        "object": "chat.completion",
        "created": int(time.time()),
        "model": model,
        "choices": [
            {
                "index": 0,
                "message": {"role": "assistant", "content": content},
                "finish_reason": "stop",
            }
        ],
        "usage": None,
    }


def sse_data(payload: dict) -> str:
    return f"data: {json.dumps(payload)}\n\n"


def format_search_results(search_results: object) -> str:
    """Render upstream web search results as collapsible markdown blocks."""
    if not isinstance(search_results, dict):
        return ""
    results = search_results.get("results")
    if not isinstance(results, list) or not results:
        return ""
    blocks = []
    for index, result in enumerate(results):
        result = result if isinstance(result, dict) else {}
        title = result.get("title") or "Untitled"
        url = result.get("url") or "#"
        preview = result.get("preview") or "No preview available"
        blocks.append(
            f"\r\n<details><summary>Source[{index}]: {title}</summary>\r\n{preview}\r\n\n[Link]({url})\r\n</details>"
        )
    return "\n\n".join(blocks)


# ============================================================
# FRAMING
# ============================================================


class LineBuffer:
    """
    Splits a byte stream into newline-delimited frames.

    The trailing partial line is held back and prefixed onto the next chunk.
    Multi-byte UTF-8 sequences split across chunks are decoded incrementally.
    """

    def __init__(self) -> None:
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self.pending = ""

    def feed(self, chunk: Any) -> List[str]:
        if isinstance(chunk, (bytes, bytearray)):
            text = self._decoder.decode(bytes(chunk))
        else:
            text = str(chunk or "")
        parts = (self.pending + text).split("\n")
        self.pending = parts.pop()
        return parts

    def flush(self) -> List[str]:
        rest = self.pending + self._decoder.decode(b"", final=True)
        self.pending = ""
        return [rest] if rest.strip() else []


async def aiter_with_keepalive(it: AsyncIterator[Any], *, timeout_seconds: float = 1.0) -> AsyncIterator[Optional[Any]]:
    """
    Yield items from an async iterator, yielding `None` periodically while waiting.

    This avoids asyncio.wait_for() because cancelling __anext__ can break some iterators.
    """
    timeout = float(max(0.05, timeout_seconds))
    pending: Optional[asyncio.Task] = asyncio.create_task(it.__anext__())
    try:
        while True:
            done, _ = await asyncio.wait({pending}, timeout=timeout)
            if pending not in done:
                yield None
                continue
            try:
                item = pending.result()
            except StopAsyncIteration:
                pending = None
                break
            pending = asyncio.create_task(it.__anext__())
            yield item
    finally:
        if pending is not None and not pending.done():
            pending.cancel()


# ============================================================
# PER-REQUEST STATE
# ============================================================


@dataclass
class RequestState:
    reasoning_open: bool = False
    image_generation: bool = False
    image_handled: bool = False
    deepsearch_started: bool = False
    deepsearch_final: bool = False
    reasoning_text: str = ""
    final_text: str = ""


class KeepAliveMonitor:
    """
    Emits a heartbeat once the stream has been idle for ``interval_seconds``.

    Deep-search heartbeats are content chunks inside the reasoning span so the
    ``<think>`` markup stays balanced; every other model gets an SSE comment.
    """

    def __init__(
        self,
        model: str,
        state: RequestState,
        *,
        interval_seconds: float = 20.0,
        enabled: bool = True,
        message: str = KEEPALIVE_MESSAGE,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.model = model
        self.state = state
        self.interval_seconds = float(interval_seconds)
        self.enabled = bool(enabled)
        self.message = message
        self._clock = clock
        self.last_activity = clock()
        self.stopped = False

    def touch(self) -> None:
        self.last_activity = self._clock()

    def poll(self) -> Optional[str]:
        if not self.enabled or self.stopped:
            return None
        now = self._clock()
        if now - self.last_activity < self.interval_seconds:
            return None
        self.last_activity = now

        state = self.state
        if self.model == DEEPSEARCH_MODEL and (state.deepsearch_started or not state.deepsearch_final):
            if state.deepsearch_started:
                content = self.message
            else:
                state.deepsearch_started = True
                content = THINK_OPEN + self.message
            debug_print("💓 Sending thinking heartbeat")
            return sse_data(build_chat_chunk(content, self.model))
        debug_print("💓 Sending keep-alive heartbeat")
        return f": {self.message}\n\n"

    def stop(self) -> None:
        self.stopped = True


# ============================================================
# TRANSLATOR
# ============================================================


def error_for_frame(error: object) -> Exception:
    name = error.get("name") if isinstance(error, dict) else None
    message = error.get("message") if isinstance(error, dict) else None
    detail = str(message or name or error)
    if name == "RateLimitError":
        return RateLimited(f"Upstream rate limit: {detail}")
    return UpstreamProtocolError(f"Upstream error frame: {detail}")


class StreamTranslator:
    """
    Turns the upstream newline-delimited JSON body into chat-completion output.

    One translator per upstream attempt; its ``RequestState`` never leaks across
    requests.
    """

    def __init__(
        self,
        model: str,
        *,
        show_thinking: bool = False,
        show_search_results: bool = True,
        image_host: Optional[ImageHost] = None,
    ) -> None:
        self.model = model
        self.show_thinking = bool(show_thinking)
        self.show_search_results = bool(show_search_results)
        self.image_host = image_host
        self.state = RequestState()
        self.buffer = LineBuffer()
        self.emitted_tokens = 0

    # --- frame handling ---

    def process_line(self, line: str) -> Tuple[Optional[str], Optional[str]]:
        """Returns ``(token, image_url)`` for one frame."""
        line = (line or "").strip()
        if not line:
            return None, None
        try:
            frame = json.loads(line)
        except json.JSONDecodeError as e:
            debug_print(f"⚠️  Skipping malformed upstream line: {e} | {line[:120]}")
            return None, None
        if not isinstance(frame, dict):
            return None, None

        if frame.get("error"):
            debug_print(f"❌ Upstream error frame: {json.dumps(frame)[:500]}")
            raise error_for_frame(frame["error"])

        result = frame.get("result")
        response = result.get("response") if isinstance(result, dict) else None
        if not isinstance(response, dict) or not response:
            return None, None

        state = self.state
        if response.get("doImgGen") or response.get("imageAttachmentInfo"):
            state.image_generation = True
        if state.image_generation:
            cached = response.get("cachedImageGenerationResponse")
            if isinstance(cached, dict) and cached.get("imageUrl") and not state.image_handled:
                state.image_handled = True
                return None, str(cached["imageUrl"])
            return None, None

        return self.derive_token(response), None

    def derive_token(self, response: dict) -> Optional[str]:
        token = response.get("token")
        token = "" if token is None else str(token)

        if self.model in SEARCH_MODELS:
            if response.get("webSearchResults") and self.show_search_results:
                formatted = format_search_results(response["webSearchResults"])
                if formatted:
                    return f"\r\n{THINK_OPEN}{formatted}{THINK_CLOSE}\r\n"
            return token or None
        if self.model == DEEPSEARCH_MODEL:
            return self._deepsearch_token(response, token)
        if self.model == REASONING_MODEL:
            return self._reasoning_token(response, token)
        return token or None

    def _deepsearch_token(self, response: dict, token: str) -> Optional[str]:
        if not token:
            return None
        state = self.state
        if response.get("messageTag") == "final":
            state.deepsearch_final = True
            state.final_text += token
            if state.deepsearch_started:
                state.deepsearch_started = False
                state.reasoning_text = ""
                return THINK_CLOSE + token
            return token
        state.reasoning_text += token
        if not state.deepsearch_started:
            state.deepsearch_started = True
            return THINK_OPEN + token
        return token

    def _reasoning_token(self, response: dict, token: str) -> Optional[str]:
        state = self.state
        thinking = bool(response.get("isThinking"))
        if thinking and not self.show_thinking:
            return None
        if thinking:
            state.reasoning_text += token
            if not state.reasoning_open:
                state.reasoning_open = True
                return THINK_OPEN + token
            return token or None
        state.final_text += token
        if state.reasoning_open:
            state.reasoning_open = False
            return THINK_CLOSE + token
        return token or None

    def close_open_spans(self) -> Optional[str]:
        state = self.state
        if state.reasoning_open or state.deepsearch_started:
            state.reasoning_open = False
            state.deepsearch_started = False
            return THINK_CLOSE
        return None

    # --- stream consumption ---

    async def _iter_lines(self, chunks: AsyncIterator[Any]) -> AsyncIterator[str]:
        async for chunk in chunks:
            for line in self.buffer.feed(chunk):
                yield line
        for line in self.buffer.flush():
            yield line

    async def _host_image(self, image_url: str) -> str:
        if self.image_host is None:
            return f"![image]({image_url})"
        return await self.image_host(image_url)

    async def _iter_outputs(
        self,
        chunks: AsyncIterator[Any],
        monitor: Optional[KeepAliveMonitor],
        idle_check_seconds: float,
    ) -> AsyncIterator[Tuple[str, str]]:
        pending: List[asyncio.Task] = []
        source = aiter_with_keepalive(self._iter_lines(chunks), timeout_seconds=idle_check_seconds)
        try:
            async for line in source:
                for task in [t for t in pending if t.done()]:
                    pending.remove(task)
                    yield _IMAGE, task.result()

                if line is None:
                    heartbeat = monitor.poll() if monitor is not None else None
                    if heartbeat:
                        yield _HEARTBEAT, heartbeat
                    continue

                if monitor is not None:
                    monitor.touch()
                token, image_url = self.process_line(line)
                if token:
                    yield _TOKEN, token
                if image_url:
                    debug_print(f"🖼️  Generated image detected: {image_url}")
                    pending.append(asyncio.ensure_future(self._host_image(image_url)))

            while pending:
                done, _ = await asyncio.wait(pending, timeout=max(0.05, idle_check_seconds))
                if not done:
                    heartbeat = monitor.poll() if monitor is not None else None
                    if heartbeat:
                        yield _HEARTBEAT, heartbeat
                    continue
                for task in [t for t in pending if t in done]:
                    pending.remove(task)
                    yield _IMAGE, task.result()

            closing = self.close_open_spans()
            if closing:
                yield _TOKEN, closing
        finally:
            for task in pending:
                task.cancel()
            await source.aclose()
            if monitor is not None:
                monitor.stop()

    async def stream_events(
        self,
        chunks: AsyncIterator[Any],
        *,
        monitor: Optional[KeepAliveMonitor] = None,
        idle_check_seconds: float = 1.0,
    ) -> AsyncIterator[str]:
        """Yield SSE events for every derived token, ending with ``data: [DONE]``."""
        async for kind, text in self._iter_outputs(chunks, monitor, idle_check_seconds):
            if kind == _HEARTBEAT:
                if text.startswith("data:"):
                    # thinking heartbeats are real content for the client
                    self.emitted_tokens += 1
                yield text
                continue
            self.emitted_tokens += 1
            yield sse_data(build_chat_chunk(text, self.model))
        yield SSE_DONE

    async def collect(self, chunks: AsyncIterator[Any]) -> dict:
        """Consume the whole body and build one ``chat.completion`` object."""
        text = ""
        image_result: Optional[str] = None
        async for kind, value in self._iter_outputs(chunks, None, 1.0):
            if kind == _TOKEN:
                text += value
            elif kind == _IMAGE:
                image_result = value
        return build_chat_completion(image_result if image_result is not None else text, self.model)
