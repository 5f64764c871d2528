"""
MicroSense — Conversation

Append-only chat log between the user and the companion, and the glue
that streams one assistant reply from the inference client into it.
Turns are never edited once appended; an aborted reply keeps whatever
text had arrived.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, AsyncIterator, Callable, List, Optional

from ..core.models import ChatTurn
from ..services.inference_client import OllamaClient

logger = logging.getLogger("microsense.conversation")


class Conversation:
    """
    Ordered chat turns.

    `turns` may be a list shared with the application context; it is only
    ever appended to, never replaced.
    """

    def __init__(
        self,
        turns: Optional[List[ChatTurn]] = None,
        on_turn: Optional[Callable[[ChatTurn], Any]] = None,
    ) -> None:
        self._turns: List[ChatTurn] = turns if turns is not None else []
        self._on_turn = on_turn

    @property
    def turns(self) -> List[ChatTurn]:
        return list(self._turns)

    def __len__(self) -> int:
        return len(self._turns)

    def window(self, n: int) -> List[ChatTurn]:
        """The last `n` non-system turns."""
        recent = [t for t in self._turns if t.role != "system"]
        return recent[-n:] if n > 0 else []

    async def append(self, role: str, content: str) -> ChatTurn:
        turn = ChatTurn(role=role, content=content)
        self._turns.append(turn)
        if self._on_turn:
            cb = self._on_turn(turn)
            if asyncio.iscoroutine(cb):
                await cb
        return turn

    async def reply(self, client: OllamaClient, system_prompt: Optional[str]) -> AsyncIterator[str]:
        """
        Stream the assistant's answer to the conversation so far.

        Tokens are yielded as they arrive; the accumulated text is appended
        as one assistant turn when the stream ends (normally, by abort or
        by error) with any content.
        """
        parts: List[str] = []
        try:
            async for token in client.chat(self.window(client.max_turns), system_prompt):
                parts.append(token)
                yield token
        finally:
            text = "".join(parts)
            if text:
                # Appending must not be skipped when the consumer goes away
                turn = ChatTurn(role="assistant", content=text)
                self._turns.append(turn)
                logger.debug(f"Assistant turn appended ({len(text)} chars)")
                if self._on_turn:
                    try:
                        cb = self._on_turn(turn)
                        if asyncio.iscoroutine(cb):
                            await cb
                    except Exception as e:
                        logger.error(f"Turn callback error: {e}")
