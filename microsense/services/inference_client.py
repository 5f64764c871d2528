"""
MicroSense — Ollama Inference Client

Streams chat completions from a local Ollama server over httpx.

  • POST {base}/api/chat with stream=true; the body is NDJSON, one record
    per line, each carrying a `message.content` fragment until `done`.
  • One request in flight per client: starting a chat aborts the previous.
  • abort() ends the stream silently, even while a read is blocked.
  • GET {base}/api/tags doubles as connectivity probe and model list.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, AsyncIterator, Awaitable, Dict, List, Optional, Sequence

import httpx

from ..core.config import inference_cfg
from ..core.errors import InferenceTransportError
from ..core.models import ChatTurn
from .ndjson import NDJSONDecoder

logger = logging.getLogger("microsense.inference")


async def _next_chunk(chunks: AsyncIterator[bytes]) -> Optional[bytes]:
    try:
        return await chunks.__anext__()
    except StopAsyncIteration:
        return None


class OllamaClient:
    """
    Async client for one Ollama endpoint.

    Usage:
        client = OllamaClient("http://localhost:11434", "llama3.2")
        async for token in client.chat(turns, system_prompt):
            ...
        client.abort()        # from anywhere, ends the stream
        await client.aclose()
    """

    def __init__(
        self,
        base_url: str = inference_cfg.base_url,
        model: str = inference_cfg.model,
        *,
        context_window: int = inference_cfg.context_window,
        temperature: float = inference_cfg.temperature,
        max_turns: int = inference_cfg.max_turns,
        probe_timeout: float = inference_cfg.probe_timeout,
        list_timeout: float = inference_cfg.list_timeout,
        connect_timeout: float = inference_cfg.connect_timeout,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.model = model
        self.context_window = context_window
        self.temperature = temperature
        self.max_turns = max_turns
        self.probe_timeout = probe_timeout
        self.list_timeout = list_timeout
        self.connect_timeout = connect_timeout
        self.connected = False

        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None
        self._cancel: Optional[asyncio.Event] = None

    # ── Lifecycle ───────────────────────────────────────────────────────

    def _http(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(transport=self._transport)
        return self._client

    def configure(self, base_url: Optional[str] = None, model: Optional[str] = None) -> None:
        if base_url:
            self.base_url = base_url.rstrip("/")
        if model:
            self.model = model

    @property
    def busy(self) -> bool:
        return self._cancel is not None

    async def aclose(self) -> None:
        self.abort()
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    # ── Chat ────────────────────────────────────────────────────────────

    def build_messages(self, turns: Sequence[ChatTurn], system_prompt: Optional[str]) -> List[Dict[str, str]]:
        """System prompt first, then the most recent non-system turns."""
        messages: List[Dict[str, str]] = []
        if system_prompt:
            messages.append({"role": "system", "content": system_prompt})
        recent = [t for t in turns if t.role != "system"]
        if self.max_turns > 0:
            recent = recent[-self.max_turns:]
        messages.extend(t.to_message() for t in recent)
        return messages

    def build_payload(self, turns: Sequence[ChatTurn], system_prompt: Optional[str]) -> Dict[str, Any]:
        return {
            "model": self.model,
            "messages": self.build_messages(turns, system_prompt),
            "stream": True,
            "options": {
                "num_ctx": self.context_window,
                "temperature": self.temperature,
            },
        }

    async def chat(self, turns: Sequence[ChatTurn], system_prompt: Optional[str] = None) -> AsyncIterator[str]:
        """Yield content fragments as they arrive. Raises InferenceTransportError."""
        self.abort()
        cancel = asyncio.Event()
        self._cancel = cancel

        url = f"{self.base_url}/api/chat"
        client = self._http()
        request = client.build_request(
            "POST",
            url,
            json=self.build_payload(turns, system_prompt),
            timeout=httpx.Timeout(None, connect=self.connect_timeout),
        )

        response: Optional[httpx.Response] = None
        try:
            response = await self._until_cancelled(client.send(request, stream=True), cancel)
            if response is None or cancel.is_set():
                return
            if not response.is_success:
                raise InferenceTransportError(url, response.status_code)
            self.connected = True

            decoder = NDJSONDecoder()
            chunks = response.aiter_bytes()
            while True:
                chunk = await self._until_cancelled(_next_chunk(chunks), cancel)
                if chunk is None or cancel.is_set():
                    return
                for record in decoder.feed(chunk):
                    if cancel.is_set():
                        return
                    message = record.get("message")
                    content = message.get("content") if isinstance(message, dict) else None
                    if content:
                        yield content
                    if record.get("done"):
                        return
        except httpx.HTTPError as e:
            if cancel.is_set():
                return
            self.connected = False
            logger.warning(f"Chat request to {url} failed: {e}")
            raise InferenceTransportError(url, None, str(e)) from e
        finally:
            if response is not None:
                await response.aclose()
            if self._cancel is cancel:
                self._cancel = None

    @staticmethod
    async def _until_cancelled(awaitable: Awaitable[Any], cancel: asyncio.Event) -> Optional[Any]:
        """Result of `awaitable`, or None once `cancel` is set first."""
        task = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(cancel.wait())
        try:
            await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            task.cancel()
            waiter.cancel()
            raise
        waiter.cancel()

        if task.done():
            return task.result()

        task.cancel()
        try:
            await task
        except (asyncio.CancelledError, Exception):
            pass
        return None

    def abort(self) -> None:
        """Abandon the in-flight chat, if any."""
        if self._cancel is not None and not self._cancel.is_set():
            logger.info("Chat request aborted")
            self._cancel.set()

    # ── Discovery ───────────────────────────────────────────────────────

    async def test_connection(self) -> bool:
        try:
            response = await self._http().get(f"{self.base_url}/api/tags", timeout=self.probe_timeout)
            self.connected = response.is_success
        except httpx.HTTPError as e:
            logger.info(f"Ollama not reachable at {self.base_url}: {e}")
            self.connected = False
        return self.connected

    async def list_models(self) -> List[str]:
        try:
            response = await self._http().get(f"{self.base_url}/api/tags", timeout=self.list_timeout)
            response.raise_for_status()
            data = response.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.warning(f"Model listing failed at {self.base_url}: {e}")
            return []
        models = data.get("models") if isinstance(data, dict) else None
        if not isinstance(models, list):
            return []
        return [m["name"] for m in models if isinstance(m, dict) and isinstance(m.get("name"), str)]
