import asyncio
import hashlib
import json
import logging
import os
import time
from typing import Any, Iterable, List, Optional

import httpx
from openai import AsyncOpenAI

from .domain import ContentPart, Message, ModelConfig, ModelRequest, ModelResponse
from .interfaces import ICache, ILLMProvider

logger = logging.getLogger("rowpipe.llm")


class OpenAIChatProvider(ILLMProvider):
    def __init__(self, base_url: Optional[str] = None, api_key: Optional[str] = None,
                 client: Optional[AsyncOpenAI] = None):
        """
        Chat provider for any OpenAI-compatible endpoint (OpenAI, OpenRouter, vLLM).
        Falls back to OPENAI_BASE_URL / OPENAI_API_KEY from the environment.
        """
        if client is None:
            # Image generation and long structured answers can take minutes
            http_client = httpx.AsyncClient(
                timeout=httpx.Timeout(connect=30.0, read=300.0, write=300.0, pool=30.0),
            )
            client = AsyncOpenAI(
                base_url=base_url or os.environ.get("OPENAI_BASE_URL"),
                api_key=api_key or os.environ.get("OPENAI_API_KEY", "EMPTY"),
                http_client=http_client,
            )
        self.client = client

    async def complete(self, request: ModelRequest, cache_salt: str = "") -> ModelResponse:
        kwargs: dict = {"model": request.model, "messages": request.messages}
        if request.temperature is not None:
            kwargs["temperature"] = request.temperature
        if request.json_mode:
            kwargs["response_format"] = {"type": "json_object"}
        if request.reasoning_effort:
            kwargs["reasoning_effort"] = request.reasoning_effort
        if request.aspect_ratio:
            kwargs["extra_body"] = {
                "modalities": ["image", "text"],
                "image_config": {"aspect_ratio": request.aspect_ratio},
            }

        logger.debug(f"🔄 [LLM] calling {request.model} ({len(request.messages)} messages)")
        t0 = time.time()
        try:
            response = await self.client.chat.completions.create(**kwargs)
        except Exception as e:
            logger.error(f"❌ [LLM] {request.model} failed after {time.time() - t0:.1f}s: {e}")
            raise
        logger.debug(f"✅ [LLM] {request.model} returned in {time.time() - t0:.1f}s")
        return self._parse(response)

    @staticmethod
    def _parse(response: Any) -> ModelResponse:
        if not getattr(response, "choices", None):
            return ModelResponse()
        message = response.choices[0].message

        images = []
        extra = getattr(message, "model_extra", None) or {}
        for image in getattr(message, "images", None) or extra.get("images") or []:
            if isinstance(image, dict):
                url = (image.get("image_url") or {}).get("url")
            else:
                url = getattr(getattr(image, "image_url", None), "url", None)
            if url:
                images.append(url)

        audio = None
        if getattr(message, "audio", None) is not None and getattr(message.audio, "data", None):
            audio = {"data": message.audio.data, "format": "wav"}

        return ModelResponse(text=message.content, images=images, audio=audio)


def request_cache_key(request: ModelRequest, salt: str = "") -> str:
    """Deterministic key over model, messages, parameters and salt."""
    payload = dict(request.to_dict(), salt=salt)
    canonical = json.dumps(payload, sort_keys=True, ensure_ascii=False, separators=(",", ":"))
    return "llm:" + hashlib.sha256(canonical.encode("utf-8")).hexdigest()


class CachedLLMProvider(ILLMProvider):
    """Serves repeated requests from a cache; a hit looks exactly like a fresh response."""

    def __init__(self, inner: ILLMProvider, cache: ICache):
        self.inner = inner
        self.cache = cache

    async def complete(self, request: ModelRequest, cache_salt: str = "") -> ModelResponse:
        key = request_cache_key(request, cache_salt)
        cached = await self.cache.get(key)
        if cached is not None:
            logger.debug(f"[LLM] cache hit for {request.model}")
            return ModelResponse.from_dict(cached)
        response = await self.inner.complete(request, cache_salt)
        if response.text or response.images or response.audio:
            await self.cache.set(key, response.to_dict())
        return response


def flatten_system(parts: List[ContentPart]) -> Any:
    if all(p.get("type") == "text" for p in parts):
        return "\n\n".join(p["text"] for p in parts)
    return parts


class BoundLLMClient:
    """A provider bound to one resolved model configuration and the shared request pool."""

    def __init__(self, provider: ILLMProvider, config: ModelConfig, semaphore: asyncio.Semaphore):
        self.provider = provider
        self.config = config
        self.semaphore = semaphore

    def build_messages(self, prefix: Iterable[ContentPart] = (), suffix: Iterable[ContentPart] = (),
                       history: Iterable[Message] = ()) -> List[Message]:
        """System parts, then history, then prefix + configured prompt + suffix as one user turn."""
        messages: List[Message] = []
        if self.config.system_parts:
            messages.append({"role": "system", "content": flatten_system(self.config.system_parts)})
        messages.extend(history)
        user_parts = list(prefix) + list(self.config.prompt_parts) + list(suffix)
        if user_parts:
            messages.append({"role": "user", "content": user_parts})
        return messages

    async def complete(self, messages: List[Message], json_mode: bool = False,
                       aspect_ratio: Optional[str] = None, cache_salt: str = "") -> ModelResponse:
        request = ModelRequest(
            model=self.config.model,
            messages=messages,
            temperature=self.config.temperature,
            json_mode=json_mode,
            reasoning_effort=self.config.reasoning_effort,
            aspect_ratio=aspect_ratio,
        )
        async with self.semaphore:
            return await self.provider.complete(request, cache_salt=cache_salt)


class LLMClientFactory:
    """Creates bound clients; every client shares one request pool."""

    def __init__(self, provider: ILLMProvider, concurrency: int = 50):
        self.provider = provider
        self.semaphore = asyncio.Semaphore(concurrency)

    def create(self, config: ModelConfig) -> BoundLLMClient:
        return BoundLLMClient(self.provider, config, self.semaphore)
