"""
Model-call capability.

Handlers and the completion extractor only see ``ModelClient.complete``:
given a system prompt and a message history, return text. Every failure,
including the timeout expiring, surfaces as a single ``ModelCallError``; this
layer never retries.
"""

import asyncio
import inspect
from collections import deque
from typing import Any, Awaitable, Callable, Deque, Dict, Iterable, List, Optional, Protocol, Union

import structlog
from openai import AsyncOpenAI

from ..config import CoachSettings
from .errors import ModelCallError

logger = structlog.get_logger(__name__)

Message = Dict[str, str]
ScriptedReply = Union[str, BaseException, Callable[[str, List[Message]], Union[str, Awaitable[str]]]]


class ModelClient(Protocol):
    async def complete(
        self,
        system_prompt: str,
        messages: List[Message],
        *,
        json_mode: bool = False,
        temperature: Optional[float] = None,
    ) -> str:
        ...


class OpenAIModelClient:
    def __init__(self, settings: CoachSettings, client: Optional[AsyncOpenAI] = None) -> None:
        self.settings = settings
        self._client = client or AsyncOpenAI(
            api_key=settings.openai_api_key,
            max_retries=0,
            timeout=settings.model_timeout_seconds,
        )

    async def complete(
        self,
        system_prompt: str,
        messages: List[Message],
        *,
        json_mode: bool = False,
        temperature: Optional[float] = None,
    ) -> str:
        request: Dict[str, Any] = {
            "model": self.settings.model,
            "messages": [{"role": "system", "content": system_prompt}, *messages],
            "temperature": self.settings.temperature if temperature is None else temperature,
            "max_tokens": self.settings.max_tokens,
        }
        if json_mode:
            request["response_format"] = {"type": "json_object"}

        try:
            completion = await asyncio.wait_for(
                self._client.chat.completions.create(**request),
                timeout=self.settings.model_timeout_seconds,
            )
        except asyncio.TimeoutError as exc:
            logger.warning("llm.timeout", model=self.settings.model, timeout=self.settings.model_timeout_seconds)
            raise ModelCallError() from exc
        except Exception as exc:
            logger.warning("llm.call_failed", model=self.settings.model, error=str(exc))
            raise ModelCallError() from exc

        content = completion.choices[0].message.content if completion.choices else None
        if not content:
            logger.warning("llm.empty_response", model=self.settings.model)
            raise ModelCallError()
        return content


class ScriptedModelClient:
    """Replays queued replies in order and records every call it receives.

    A queued exception is raised instead of returned; a queued callable is
    invoked with the prompt and messages, and its result is awaited when it is
    awaitable. Once the queue is empty the client answers with ``fallback`` or,
    when there is none, raises ``ModelCallError``.
    """

    def __init__(self, replies: Optional[Iterable[ScriptedReply]] = None, fallback: Optional[str] = None) -> None:
        self._replies: Deque[ScriptedReply] = deque(replies or [])
        self.fallback = fallback
        self.calls: List[Dict[str, Any]] = []

    def queue(self, *replies: ScriptedReply) -> None:
        self._replies.extend(replies)

    async def complete(
        self,
        system_prompt: str,
        messages: List[Message],
        *,
        json_mode: bool = False,
        temperature: Optional[float] = None,
    ) -> str:
        self.calls.append(
            {
                "system_prompt": system_prompt,
                "messages": list(messages),
                "json_mode": json_mode,
                "temperature": temperature,
            }
        )
        if not self._replies:
            if self.fallback is None:
                raise ModelCallError()
            return self.fallback
        reply = self._replies.popleft()
        if isinstance(reply, ModelCallError):
            raise reply
        if isinstance(reply, BaseException):
            raise ModelCallError() from reply
        if callable(reply):
            produced = reply(system_prompt, list(messages))
            if inspect.isawaitable(produced):
                produced = await produced
            return produced
        return reply
