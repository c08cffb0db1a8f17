import sys
import os
sys.path.append(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import unittest
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

from rowpipe.domain import ModelConfig, ModelRequest, ModelResponse, text_part
from rowpipe.llm import CachedLLMProvider, LLMClientFactory, OpenAIChatProvider, request_cache_key
from rowpipe.mocks import ScriptedLLMProvider
from rowpipe.services import MemoryCache


def completion(content=None, images=None, audio=None, extra=None):
    message = SimpleNamespace(content=content, images=images, audio=audio, model_extra=extra or {})
    return SimpleNamespace(choices=[SimpleNamespace(message=message)])


def make_provider(response):
    client = MagicMock()
    client.chat.completions.create = AsyncMock(return_value=response)
    return OpenAIChatProvider(client=client), client.chat.completions.create


REQUEST = ModelRequest(model="m", messages=[{"role": "user", "content": "hi"}])


class TestOpenAIChatProvider(unittest.IsolatedAsyncioTestCase):

    async def test_plain_request_kwargs(self):
        provider, create = make_provider(completion("hello"))
        response = await provider.complete(REQUEST)

        self.assertEqual(response.text, "hello")
        create.assert_awaited_once_with(model="m", messages=REQUEST.messages)

    async def test_json_reasoning_and_image_options(self):
        provider, create = make_provider(completion("{}"))
        request = ModelRequest(
            model="m", messages=[], temperature=0.0, json_mode=True,
            reasoning_effort="high", aspect_ratio="1:1",
        )
        await provider.complete(request)

        kwargs = create.await_args.kwargs
        self.assertEqual(kwargs["temperature"], 0.0)
        self.assertEqual(kwargs["response_format"], {"type": "json_object"})
        self.assertEqual(kwargs["reasoning_effort"], "high")
        self.assertEqual(kwargs["extra_body"]["image_config"], {"aspect_ratio": "1:1"})

    async def test_images_and_audio_are_extracted(self):
        images = [{"type": "image_url", "image_url": {"url": "data:image/png;base64,AAA"}}]
        provider, _ = make_provider(completion(None, extra={"images": images}))
        self.assertEqual((await provider.complete(REQUEST)).images, ["data:image/png;base64,AAA"])

        provider, _ = make_provider(completion(None, audio=SimpleNamespace(data="UklGRg==")))
        self.assertEqual((await provider.complete(REQUEST)).audio, {"data": "UklGRg==", "format": "wav"})

    async def test_errors_propagate(self):
        client = MagicMock()
        client.chat.completions.create = AsyncMock(side_effect=RuntimeError("429"))
        with self.assertRaises(RuntimeError):
            await OpenAIChatProvider(client=client).complete(REQUEST)


class TestCachedLLMProvider(unittest.IsolatedAsyncioTestCase):

    async def test_repeat_request_is_served_from_cache(self):
        inner = ScriptedLLMProvider(responses=["first answer"])
        provider = CachedLLMProvider(inner, MemoryCache())

        a = await provider.complete(REQUEST, cache_salt="_cand_0")
        b = await provider.complete(REQUEST, cache_salt="_cand_0")

        self.assertEqual(inner.call_count, 1)
        self.assertEqual(a, b)

    async def test_salt_separates_entries(self):
        inner = ScriptedLLMProvider(responses=["one", "two"])
        provider = CachedLLMProvider(inner, MemoryCache())

        a = await provider.complete(REQUEST, cache_salt="_cand_0")
        b = await provider.complete(REQUEST, cache_salt="_cand_1")
        self.assertEqual((a.text, b.text), ("one", "two"))

    async def test_empty_responses_are_not_cached(self):
        inner = ScriptedLLMProvider(responses=[ModelResponse(), "late"])
        provider = CachedLLMProvider(inner, MemoryCache())
        await provider.complete(REQUEST)
        self.assertEqual((await provider.complete(REQUEST)).text, "late")


def test_cache_key_is_deterministic():
    same = ModelRequest(model="m", messages=[{"content": "hi", "role": "user"}])
    assert request_cache_key(REQUEST) == request_cache_key(same)
    assert request_cache_key(REQUEST) != request_cache_key(REQUEST, salt="_judge")
    assert request_cache_key(REQUEST).startswith("llm:")


def test_bound_client_message_layout():
    config = ModelConfig(model="m", system_parts=[text_part("sys a"), text_part("sys b")],
                         prompt_parts=[text_part("prompt")])
    client = LLMClientFactory(ScriptedLLMProvider()).create(config)
    history = [{"role": "user", "content": "earlier"}, {"role": "assistant", "content": "reply"}]

    messages = client.build_messages(prefix=[text_part("plugin")], suffix=[text_part("tail")], history=history)

    assert messages[0] == {"role": "system", "content": "sys a\n\nsys b"}
    assert messages[1:3] == history
    assert messages[3]["content"] == [text_part("plugin"), text_part("prompt"), text_part("tail")]
