"""OpenRouter text generation through the OpenAI-compatible SDK."""
from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Any, AsyncIterator

from deepresearch.config import settings
from deepresearch.services import logger as log_service


@dataclass
class Usage:
    input_tokens: int = 0
    output_tokens: int = 0


class OpenRouterStream:
    def __init__(self, stream_coro: Any):
        self._stream_coro = stream_coro
        self._stream: Any | None = None
        self.usage = Usage()

    async def __aenter__(self) -> "OpenRouterStream":
        self._stream = await self._stream_coro
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        if self._stream is not None:
            await self._stream.close()

    async def _iter_text(self) -> AsyncIterator[str]:
        if self._stream is None:
            return
        async for chunk in self._stream:
            usage = getattr(chunk, "usage", None)
            if usage:
                self.usage = Usage(
                    input_tokens=getattr(usage, "prompt_tokens", 0) or 0,
                    output_tokens=getattr(usage, "completion_tokens", 0) or 0,
                )

            choices = getattr(chunk, "choices", None) or []
            if not choices:
                continue
            delta = getattr(choices[0], "delta", None)
            if not delta:
                continue
            text = getattr(delta, "content", None)
            if text:
                yield text

    @property
    def text_stream(self) -> AsyncIterator[str]:
        return self._iter_text()


class TextGenerator:
    """``generate(prompt, system)`` as a text stream over a chat-completions client."""

    def __init__(self, openai_client: Any, model: str | None = None, max_tokens: int | None = None):
        self._client = openai_client
        self.model = model or get_model()
        self.max_tokens = max_tokens or settings.generation_max_tokens

    @staticmethod
    def _temperature_for_model(model: str) -> int:
        # Some OpenAI GPT-5-compatible gateways reject temperature=0.
        if "gpt-5" in (model or "").lower():
            return 1
        return 0

    def stream(self, prompt: str, system: str) -> OpenRouterStream:
        stream = self._client.chat.completions.create(
            model=self.model,
            messages=[
                {"role": "system", "content": system},
                {"role": "user", "content": prompt},
            ],
            max_tokens=self.max_tokens,
            temperature=self._temperature_for_model(self.model),
            stream=True,
            stream_options={"include_usage": True},
        )
        return OpenRouterStream(stream)

    async def generate(self, prompt: str, system: str, *, caller: str = "generator") -> AsyncIterator[str]:
        """Stream generated text, logging the call once the stream ends or fails."""
        t0 = time.monotonic()
        output_chars = 0
        usage = Usage()
        try:
            async with self.stream(prompt, system) as stream:
                async for text in stream.text_stream:
                    output_chars += len(text)
                    yield text
                usage = stream.usage
        except Exception as e:
            log_service.log_llm_call(
                model=self.model,
                caller=caller,
                duration_ms=int((time.monotonic() - t0) * 1000),
                status="error",
                error=str(e),
            )
            raise
        log_service.log_llm_call(
            model=self.model,
            caller=caller,
            input_tokens=usage.input_tokens,
            output_tokens=usage.output_tokens,
            duration_ms=int((time.monotonic() - t0) * 1000),
            output_chars=output_chars,
        )


def get_client() -> Any:
    """Get an OpenRouter client via the OpenAI-compatible SDK."""
    from openai import AsyncOpenAI

    base_url = settings.openrouter_base_url.strip() or "https://openrouter.ai/api/v1"
    return AsyncOpenAI(
        api_key=settings.openrouter_api_key,
        base_url=base_url,
    )


def get_model() -> str:
    """Get the active OpenRouter model id."""
    if settings.openrouter_model:
        return settings.openrouter_model
    return settings.default_model


_generator: TextGenerator | None = None


def generator() -> TextGenerator:
    """Get or create the shared text generator."""
    global _generator
    if _generator is None:
        _generator = TextGenerator(get_client())
    return _generator
