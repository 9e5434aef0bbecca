from __future__ import annotations

import asyncio
import functools
import json
from typing import AsyncIterator, Optional

import httpx
from fastapi import HTTPException
from starlette.responses import JSONResponse, StreamingResponse

from .chat_payload import build_chat_payload, upstream_model_name
from .console import debug_print, mask_credential
from .credential_pool import CredentialPool
from .errors import (
    CredentialsExhausted,
    GatewayError,
    NoCredentialAvailable,
    RateLimited,
    UpstreamTransportFailure,
    error_payload_for,
)
from .image_hosting import host_generated_image, upload_attachment
from .streaming import SSE_DONE, SSE_KEEPALIVE, KeepAliveMonitor, StreamTranslator, sse_data
from .temp_credential_pool import TempCredentialPool

GROK_CONVERSATION_URL = "https://grok.com/rest/app-chat/conversations/new"
UPSTREAM_TIMEOUT = httpx.Timeout(30.0, read=300.0)

UPSTREAM_HEADERS = {
    "accept": "text/event-stream",
    "content-type": "text/plain;charset=UTF-8",
    "origin": "https://grok.com",
    "user-agent": "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/129.0.0.0 Safari/537.36",
}

# Strong refs for fire-and-forget refills.
_background_tasks: set = set()


def _spawn_background(coro) -> asyncio.Task:  # noqa: ANN001
    task = asyncio.create_task(coro)
    _background_tasks.add(task)
    task.add_done_callback(_background_tasks.discard)
    return task


def custom_credential_cookie(token: str) -> str:
    return f"sso={token};sso-rw={token}"


class CredentialSource:
    """
    Picks and rotates credentials for one request.

    ``temp`` draws from the short-lived pool, ``custom`` from a single-entry pool
    built from the caller's own token, ``pool`` from the shared long-lived pool.
    """

    def __init__(
        self,
        model: str,
        *,
        pool: Optional[CredentialPool] = None,
        temp_pool: Optional[TempCredentialPool] = None,
        custom: bool = False,
    ) -> None:
        self.model = model
        self.pool = pool
        self.temp_pool = temp_pool
        self.custom = custom
        if temp_pool is not None:
            self.kind = "temp"
        elif custom:
            self.kind = "custom"
        else:
            self.kind = "pool"

    async def _temp_current(self) -> Optional[str]:
        credential = self.temp_pool.consume()
        if credential is None:
            if self.temp_pool.refreshing:
                await self.temp_pool.wait_idle()
            else:
                await self.temp_pool.ensure()
            credential = self.temp_pool.consume()
        return credential

    async def acquire(self) -> str:
        if self.kind == "temp":
            credential = await self._temp_current()
        else:
            credential = self.pool.next(self.model) if self.pool is not None else None
        if not credential:
            raise NoCredentialAvailable(f"No credential available for model {self.model}")
        return credential

    async def peek(self) -> Optional[str]:
        """Credential for side requests (attachment uploads); never charges quota."""
        if self.kind == "temp":
            return await self._temp_current()
        return self.pool.peek(self.model) if self.pool is not None else None

    async def rotate(self, credential: str, reason: Exception) -> None:
        debug_print(f"🔄 Rotating credential {mask_credential(credential)} ({type(reason).__name__}: {reason})")
        if self.kind == "temp":
            self.temp_pool.discard(credential)
            if self.temp_pool.credentials:
                _spawn_background(_refill_temp_pool(self.temp_pool))
            else:
                await self.temp_pool.ensure()
                await self.temp_pool.wait_idle()
            return

        if self.kind == "custom":
            raise CredentialsExhausted(f"The custom credential is no longer valid for model {self.model}")

        self.pool.invalidate(self.model, credential)
        remaining = self.pool.count(self.model)
        debug_print(f"🔑 Remaining credentials for {self.model}: {remaining}")
        if remaining == 0:
            raise CredentialsExhausted(
                f"{self.model} has reached its request limit, switch models or start a new conversation"
            )


async def _refill_temp_pool(temp_pool: TempCredentialPool) -> None:
    try:
        await temp_pool.ensure()
    except GatewayError as e:
        debug_print(f"❌ Background short-lived credential refill failed: {e.message}")


def select_credential_source(core, model: str, auth_token: str, config: dict) -> CredentialSource:  # noqa: ANN001
    if "grok-2" in model and config.get("is_temp_grok2") and core.temp_credential_pool is not None:
        return CredentialSource(model, temp_pool=core.temp_credential_pool)
    if config.get("is_custom_sso"):
        pool = CredentialPool()
        pool.set_single(custom_credential_cookie(auth_token))
        return CredentialSource(model, pool=pool, custom=True)
    return CredentialSource(model, pool=core.credential_pool)


def _status_failure(status_code: int, text: str) -> GatewayError:
    if status_code == 429:
        return RateLimited("Upstream rate limit (HTTP 429)")
    debug_print(f"❌ Abnormal credential status! HTTP {status_code}: {text[:200]}")
    return UpstreamTransportFailure(f"Upstream returned HTTP {status_code}", upstream_status=status_code)


def _max_attempts(config: dict) -> int:
    try:
        return max(1, int(config.get("max_retry_attempts", 2)))
    except (TypeError, ValueError):
        return 2


def _translator_for(model: str, credential: str, config: dict) -> StreamTranslator:
    return StreamTranslator(
        model,
        show_thinking=bool(config.get("show_thinking")),
        show_search_results=bool(config.get("show_search_results", True)),
        image_host=functools.partial(host_generated_image, credential=credential, config=config),
    )


def _monitor_for(model: str, translator: StreamTranslator, config: dict) -> KeepAliveMonitor:
    try:
        interval_seconds = float(config.get("anti_idle_interval_ms", 20000)) / 1000.0
    except (TypeError, ValueError):
        interval_seconds = 20.0
    return KeepAliveMonitor(
        model,
        translator.state,
        interval_seconds=max(0.05, interval_seconds),
        enabled=bool(config.get("anti_idle_enabled", True)),
    )


def _open_upstream(client: httpx.AsyncClient, credential: str, payload: dict):
    headers = dict(UPSTREAM_HEADERS)
    headers["cookie"] = credential
    return client.stream("POST", GROK_CONVERSATION_URL, headers=headers, content=json.dumps(payload))


async def complete_chat(source: CredentialSource, payload: dict, model: str, config: dict) -> dict:
    """Non-streaming attempt loop; returns one ``chat.completion`` object."""
    max_attempts = _max_attempts(config)
    async with httpx.AsyncClient(timeout=UPSTREAM_TIMEOUT) as client:
        for attempt in range(1, max_attempts + 1):
            credential = await source.acquire()
            debug_print(f"📡 Attempt {attempt}/{max_attempts} with credential {mask_credential(credential)}")
            try:
                async with _open_upstream(client, credential, payload) as response:
                    if response.status_code >= 400:
                        body = (await response.aread()).decode("utf-8", errors="replace")
                        raise _status_failure(response.status_code, body)
                    debug_print(f"✅ Upstream accepted request (HTTP {response.status_code})")
                    translator = _translator_for(model, credential, config)
                    return await translator.collect(response.aiter_bytes())
            except GatewayError as e:
                if not e.recoverable:
                    raise
                debug_print(f"⚠️  Attempt {attempt} failed: {e.message}")
                await source.rotate(credential, e)
            except httpx.TransportError as e:
                debug_print(f"⚠️  Network error on attempt {attempt}: {type(e).__name__}: {e}")

    raise CredentialsExhausted(f"All credentials for model {model} are exhausted")


async def stream_chat(source: CredentialSource, payload: dict, model: str, config: dict) -> AsyncIterator[str]:
    """Streaming attempt loop; yields SSE events and always ends with ``[DONE]`` or an error event."""
    # Flush headers right away so the client sees the stream open.
    yield SSE_KEEPALIVE
    max_attempts = _max_attempts(config)
    try:
        async with httpx.AsyncClient(timeout=UPSTREAM_TIMEOUT) as client:
            for attempt in range(1, max_attempts + 1):
                credential = await source.acquire()
                debug_print(f"📡 Streaming attempt {attempt}/{max_attempts} with credential {mask_credential(credential)}")
                translator = _translator_for(model, credential, config)
                monitor = _monitor_for(model, translator, config)
                try:
                    async with _open_upstream(client, credential, payload) as response:
                        if response.status_code >= 400:
                            body = (await response.aread()).decode("utf-8", errors="replace")
                            raise _status_failure(response.status_code, body)
                        debug_print(f"✅ Upstream accepted streaming request (HTTP {response.status_code})")
                        async for event in translator.stream_events(
                            response.aiter_bytes(),
                            monitor=monitor,
                            idle_check_seconds=min(1.0, monitor.interval_seconds),
                        ):
                            yield event
                        return
                except GatewayError as e:
                    monitor.stop()
                    if not e.recoverable:
                        raise
                    debug_print(f"⚠️  Streaming attempt {attempt} failed: {e.message}")
                    await source.rotate(credential, e)
                    if translator.emitted_tokens:
                        # Content already reached the client; a retry would duplicate it.
                        raise
                except httpx.TransportError as e:
                    monitor.stop()
                    debug_print(f"⚠️  Network error on streaming attempt {attempt}: {type(e).__name__}: {e}")
                    if translator.emitted_tokens:
                        raise UpstreamTransportFailure(f"Upstream connection lost: {e}") from e

        raise CredentialsExhausted(f"All credentials for model {model} are exhausted")
    except GatewayError as e:
        debug_print(f"❌ Streaming request failed: {e.message}")
        yield sse_data(error_payload_for(e))
        yield SSE_DONE


async def api_chat_completions(core, request, auth_token: str):  # noqa: ANN001
    debug_print("\n" + "=" * 80 + "\n🔵 NEW CHAT COMPLETION REQUEST\n" + "=" * 80)
    config = core.get_config()

    raw = await request.body()
    body_limit = int(config.get("body_limit_bytes") or 0)
    if body_limit and len(raw) > body_limit:
        raise HTTPException(status_code=413, detail=f"Request body exceeds {body_limit} bytes")
    try:
        body = json.loads(raw or b"null")
    except json.JSONDecodeError as e:
        debug_print(f"❌ Invalid JSON in request body: {e}")
        raise HTTPException(status_code=400, detail=f"Invalid JSON in request body: {str(e)}")
    if not isinstance(body, dict):
        raise HTTPException(status_code=400, detail="Request body must be a JSON object.")

    model = body.get("model")
    messages = body.get("messages")
    stream = bool(body.get("stream", False))

    if not model:
        raise HTTPException(status_code=400, detail="Missing 'model' in request body.")
    if not isinstance(model, str):
        raise HTTPException(status_code=400, detail="'model' must be a string.")
    if not messages:
        raise HTTPException(status_code=400, detail="Missing 'messages' in request body.")
    if not isinstance(messages, list):
        raise HTTPException(status_code=400, detail="'messages' must be an array.")
    debug_print(f"🌊 Stream={stream} | 🤖 Model={model} | 💬 Messages={len(messages)}")

    try:
        upstream_model_name(model)
        source = select_credential_source(core, model, auth_token, config)
        upload_credential = await source.peek()
        uploader = None
        if upload_credential:
            uploader = functools.partial(upload_attachment, credential=upload_credential)
        payload = await build_chat_payload(body, config=config, uploader=uploader)
        debug_print(f"📦 Upstream payload: {json.dumps(payload)[:500]}")

        if source.pool is not None:
            debug_print(f"📊 Remaining capacity: {source.pool.remaining_capacity()}")

        if stream:
            return StreamingResponse(
                stream_chat(source, payload, model, config),
                media_type="text/event-stream",
                headers={"Cache-Control": "no-cache", "Connection": "keep-alive"},
            )
        return await complete_chat(source, payload, model, config)
    except GatewayError as e:
        debug_print(f"❌ Chat completion failed: {type(e).__name__}: {e.message}")
        return JSONResponse(status_code=int(e.status_code), content=error_payload_for(e))
