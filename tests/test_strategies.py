import sys
import os
sys.path.append(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import unittest

from rowpipe.domain import ModelConfig, ModelResponse, StepConfig, text_part
from rowpipe.errors import ConfigurationError
from rowpipe.llm import LLMClientFactory
from rowpipe.mocks import ScriptedLLMProvider, system_text
from rowpipe.pipeline.artifacts import MemoryArtifactWriter
from rowpipe.pipeline.commands import CommandRunner
from rowpipe.pipeline.logger import PipelineLogger
from rowpipe.strategies import (
    CandidateStrategy, FeedbackLoopStrategy, GenerationRequest, GenerationServices,
    StandardStrategy, build_strategy,
)
from rowpipe.strategies.candidate import JUDGE_SYSTEM
from rowpipe.strategies.feedback import CRITIC_SYSTEM


class SaltedProvider(ScriptedLLMProvider):
    """Drafts echo their cache salt; judge and critic answers come from fixed values."""

    def __init__(self, judge_answer=None, critique="Too short."):
        super().__init__()
        self.judge_answer = judge_answer
        self.critique = critique

    async def complete(self, request, cache_salt=""):
        self.requests.append(request)
        self.salts.append(cache_salt)
        system = system_text(request)
        if JUDGE_SYSTEM in system:
            return ModelResponse(text=self.judge_answer)
        if CRITIC_SYSTEM in system:
            return ModelResponse(text=self.critique)
        return ModelResponse(text=f"draft{cache_salt}")


def make_services(provider):
    return GenerationServices(
        clients=LLMClientFactory(provider, concurrency=8),
        artifacts=MemoryArtifactWriter(),
        commands=CommandRunner(timeout=10),
        logger=PipelineLogger(name="rowpipe.test"),
    )


def make_request(step, **overrides):
    fields = dict(
        step=step,
        step_index=0,
        row_index=0,
        context={"topic": "owls"},
        system_parts=[text_part("You write about owls.")],
        user_parts=[text_part("Write a haiku.")],
        output_base="output_0_1",
        cache_salt="",
    )
    fields.update(overrides)
    return GenerationRequest(**fields)


class TestCandidateStrategy(unittest.IsolatedAsyncioTestCase):

    async def test_judge_pick_becomes_canonical_verbatim(self):
        provider = SaltedProvider(judge_answer='{"best_candidate_index": 1}')
        services = make_services(provider)
        step = StepConfig(model=ModelConfig(model="writer"), candidates=3, judge=ModelConfig(model="judge"))

        result = await build_strategy(step, services).generate(make_request(step))

        self.assertEqual(result.raw_result, "draft_cand_1")
        self.assertEqual(result.history_message, {"role": "assistant", "content": "draft_cand_1"})
        files = services.artifacts.by_filename()
        self.assertEqual(files["output_0_1.txt"].content, "draft_cand_1")
        for i in range(1, 4):
            self.assertIn(f"output_0_1_cand_{i}.txt", files)

    async def test_judge_sees_every_candidate(self):
        provider = SaltedProvider(judge_answer='{"best_candidate_index": 0}')
        services = make_services(provider)
        step = StepConfig(model=ModelConfig(model="writer"), candidates=2, judge=ModelConfig(model="judge"))

        await build_strategy(step, services).generate(make_request(step))

        judge_request = provider.requests[-1]
        judge_text = str(judge_request.messages[-1]["content"])
        self.assertIn("--- Candidate 0 ---", judge_text)
        self.assertIn("--- Candidate 1 ---", judge_text)
        self.assertIn("Write a haiku.", judge_text)
        self.assertEqual(provider.salts[-1], "_judge")

    async def test_out_of_range_index_raises(self):
        provider = SaltedProvider(judge_answer='{"best_candidate_index": 3}')
        services = make_services(provider)
        step = StepConfig(model=ModelConfig(model="writer"), candidates=3, judge=ModelConfig(model="judge"))

        with self.assertRaises(ConfigurationError):
            await build_strategy(step, services).generate(make_request(step))

    async def test_without_judge_first_candidate_wins(self):
        provider = SaltedProvider()
        services = make_services(provider)
        step = StepConfig(model=ModelConfig(model="writer"), candidates=2)

        result = await build_strategy(step, services).generate(make_request(step))

        self.assertEqual(result.raw_result, "draft_cand_0")
        self.assertEqual(provider.call_count, 2)

    async def test_failed_candidates_are_dropped(self):
        class FlakyProvider(SaltedProvider):
            async def complete(self, request, cache_salt=""):
                if cache_salt == "_cand_0":
                    self.requests.append(request)
                    raise RuntimeError("upstream 500")
                return await super().complete(request, cache_salt)

        provider = FlakyProvider()
        services = make_services(provider)
        step = StepConfig(model=ModelConfig(model="writer"), candidates=2, max_retries=1)

        result = await build_strategy(step, services).generate(make_request(step))

        self.assertEqual(result.raw_result, "draft_cand_1")

    def test_composition(self):
        services = make_services(SaltedProvider())
        step = StepConfig(
            model=ModelConfig(model="writer"), candidates=2,
            feedback=ModelConfig(model="critic"), feedback_loops=1,
        )
        strategy = build_strategy(step, services)
        self.assertIsInstance(strategy, FeedbackLoopStrategy)
        self.assertIsInstance(strategy.inner, CandidateStrategy)
        self.assertIsInstance(build_strategy(StepConfig(model=ModelConfig(model="m")), services), StandardStrategy)


class TestFeedbackLoopStrategy(unittest.IsolatedAsyncioTestCase):

    async def test_runs_configured_number_of_refinements(self):
        provider = SaltedProvider(critique="Mention the moon.")
        services = make_services(provider)
        step = StepConfig(model=ModelConfig(model="writer"), feedback=ModelConfig(model="critic"), feedback_loops=2)

        result = await build_strategy(step, services).generate(make_request(step))

        self.assertEqual(provider.salts, ["", "_critique_1", "_refine_1", "_critique_2", "_refine_2"])
        self.assertEqual(result.raw_result, "draft_refine_2")

        last_messages = provider.requests[-1].messages
        self.assertEqual(last_messages[-1]["role"], "user")
        self.assertIn("Mention the moon.", str(last_messages[-1]["content"]))
        self.assertEqual(last_messages[-2], {"role": "assistant", "content": "draft_refine_1"})

    async def test_zero_loops_is_plain_generation(self):
        provider = SaltedProvider()
        services = make_services(provider)
        step = StepConfig(model=ModelConfig(model="writer"), feedback=ModelConfig(model="critic"), feedback_loops=0)

        await build_strategy(step, services).generate(make_request(step))
        self.assertEqual(provider.call_count, 1)


class TestStandardStrategy(unittest.IsolatedAsyncioTestCase):

    async def test_media_result_gets_placeholder_history(self):
        provider = ScriptedLLMProvider(responses=[ModelResponse(images=["data:image/png;base64,iVBORw0KGgo="])])
        services = make_services(provider)
        step = StepConfig(model=ModelConfig(model="painter"), aspect_ratio="16:9")

        result = await StandardStrategy(services).generate(make_request(step))

        self.assertEqual(result.history_message, {"role": "assistant", "content": "[Generated image]"})
        self.assertEqual(provider.requests[0].aspect_ratio, "16:9")
        event = services.artifacts.events[0]
        self.assertEqual(event.filename, "output_0_1.png")
        self.assertEqual(event.type, "image")

    async def test_schema_result_is_saved_as_json(self):
        provider = ScriptedLLMProvider(responses=['{"title": "Owls"}'])
        services = make_services(provider)
        step = StepConfig(model=ModelConfig(model="writer"))
        schema = {"type": "object", "properties": {"title": {"type": "string"}}, "required": ["title"]}

        result = await StandardStrategy(services).generate(make_request(step, schema=schema))

        self.assertEqual(result.raw_result, {"title": "Owls"})
        self.assertIn('"title": "Owls"', result.history_message["content"])
        event = services.artifacts.events[0]
        self.assertEqual((event.filename, event.type), ("output_0_1.json", "json"))

    async def test_configured_extension_wins(self):
        provider = ScriptedLLMProvider(responses=["<html></html>"])
        services = make_services(provider)
        step = StepConfig(model=ModelConfig(model="writer"))

        await StandardStrategy(services).generate(make_request(step, output_extension=".html"))
        self.assertEqual(services.artifacts.events[0].filename, "output_0_1.html")


if __name__ == "__main__":
    unittest.main()
