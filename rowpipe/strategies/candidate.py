import asyncio
from dataclasses import replace
from typing import List

from ..domain import GenerationResult, ContentPart, text_part
from ..errors import ConfigurationError
from ..querier import RetryQuerier
from ..utils import render_parts
from .base import GenerationRequest, GenerationServices, IGenerationStrategy
from .standard import StandardStrategy

JUDGE_SYSTEM = (
    "You are an impartial judge evaluating AI responses. You will be shown the original "
    "request followed by several numbered candidates. Pick the one that best fulfils the "
    "request. Return ONLY the JSON object with the index of the best candidate, like "
    '{"best_candidate_index": 0}.'
)
JUDGE_PROMPT = "Analyze the candidates above and select the best one based on the original request."
JUDGE_SCHEMA = {
    "type": "object",
    "properties": {
        "best_candidate_index": {"type": "integer"},
        "reason": {"type": "string"},
    },
    "required": ["best_candidate_index"],
}


class CandidateStrategy(IGenerationStrategy):
    """
    Runs the inner strategy K times in parallel, each to its own artifact path,
    then lets a judge model pick the canonical candidate (candidate 0 without one).
    """

    def __init__(self, inner: IGenerationStrategy, standard: StandardStrategy,
                 services: GenerationServices):
        self.inner = inner
        self.standard = standard
        self.services = services

    async def generate(self, request: GenerationRequest) -> GenerationResult:
        step = request.step
        skip = request.skip_commands or step.skip_candidate_command

        async def _candidate(i: int) -> GenerationResult:
            return await self.inner.generate(replace(
                request,
                cache_salt=f"{request.cache_salt}_cand_{i}",
                output_base=f"{request.output_base}_cand_{i + 1}",
                skip_commands=skip,
            ))

        outcomes = await asyncio.gather(
            *[_candidate(i) for i in range(step.candidates)], return_exceptions=True
        )
        candidates: List[GenerationResult] = []
        last_error = None
        for i, outcome in enumerate(outcomes):
            if isinstance(outcome, ConfigurationError):
                raise outcome
            if isinstance(outcome, Exception):
                last_error = outcome
                self.services.logger.warning(
                    f"[Row {request.row_index}] Step {request.step_index + 1} candidate {i + 1} failed: {outcome}"
                )
                continue
            candidates.append(outcome)
        if not candidates:
            raise last_error

        index = await self.judge(request, candidates) if step.judge else 0
        winner = candidates[index]
        self.services.logger.debug(
            f"[Row {request.row_index}] Step {request.step_index + 1} picked candidate {index + 1}/{len(candidates)}"
        )

        path = await self.standard.save(request, winner.content, winner.raw_result)
        if path and step.command and step.skip_candidate_command and not request.skip_commands:
            await self.services.commands.post_process(step.command, path, request.context)
        return replace(winner, artifact_path=path or winner.artifact_path)

    async def judge(self, request: GenerationRequest, candidates: List[GenerationResult]) -> int:
        """Index of the best candidate; anything out of range is a configuration error."""
        config = request.step.judge
        client = self.services.clients.create(replace(
            config,
            system_parts=render_parts(config.system_parts, request.context) or [text_part(JUDGE_SYSTEM)],
            prompt_parts=[],
        ))

        parts: List[ContentPart] = [text_part("Original request:")]
        parts.extend(p for p in request.user_parts if p.get("type") == "text")
        for i, candidate in enumerate(candidates):
            parts.append(text_part(f"--- Candidate {i} ---"))
            parts.append(candidate.content.as_part())
        parts.extend(render_parts(config.prompt_parts, request.context) or [text_part(JUDGE_PROMPT)])

        result = await RetryQuerier(request.step.max_retries).query(
            client,
            client.build_messages(suffix=parts),
            schema=JUDGE_SCHEMA,
            cache_salt=f"{request.cache_salt}_judge",
        )
        index = result.value["best_candidate_index"]
        if not 0 <= index < len(candidates):
            raise ConfigurationError(
                f"Judge returned candidate index {index} but only {len(candidates)} candidate(s) exist"
            )
        return index
