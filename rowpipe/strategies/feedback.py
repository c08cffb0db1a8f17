from dataclasses import replace
from typing import List

from ..domain import ContentPart, GenerationResult, text_part
from ..querier import RetryQuerier
from ..utils import render_parts
from .base import GenerationRequest, GenerationServices, IGenerationStrategy
from .standard import StandardStrategy

CRITIC_SYSTEM = (
    "You are a demanding reviewer. Compare the draft against the original instructions "
    "and list concrete, actionable problems. Do not rewrite the draft yourself."
)
CRITIC_PROMPT = "Critique the draft above against the original instructions."
REGENERATE = "Critique:\n{critique}\n\nPlease regenerate the content to address this critique."


class FeedbackLoopStrategy(IGenerationStrategy):
    """
    Draft with the inner strategy, then critique-and-regenerate `feedback_loops`
    times with the standard strategy. The last iteration is canonical.
    """

    def __init__(self, inner: IGenerationStrategy, standard: StandardStrategy,
                 services: GenerationServices):
        self.inner = inner
        self.standard = standard
        self.services = services

    async def generate(self, request: GenerationRequest) -> GenerationResult:
        result = await self.inner.generate(request)
        followups = list(request.followups)
        for n in range(1, request.step.feedback_loops + 1):
            critique = await self.critique(request, result, n)
            self.services.logger.debug(
                f"[Row {request.row_index}] Step {request.step_index + 1} critique {n}: {critique[:200]}"
            )
            regenerate: List[ContentPart] = []
            if result.content.kind != "text":
                regenerate.append(result.content.as_part())
            regenerate.append(text_part(REGENERATE.format(critique=critique)))
            followups = followups + [
                result.history_message,
                {"role": "user", "content": regenerate},
            ]
            result = await self.standard.generate(replace(
                request,
                followups=followups,
                cache_salt=f"{request.cache_salt}_refine_{n}",
            ))
        return result

    async def critique(self, request: GenerationRequest, draft: GenerationResult, iteration: int) -> str:
        config = request.step.feedback
        client = self.services.clients.create(replace(
            config,
            system_parts=render_parts(config.system_parts, request.context) or [text_part(CRITIC_SYSTEM)],
            prompt_parts=[],
        ))
        parts: List[ContentPart] = [text_part("Original instructions:")]
        parts.extend(p for p in request.user_parts if p.get("type") == "text")
        parts.append(text_part("Draft:"))
        if request.schema is not None:
            parts.append(text_part(draft.history_message["content"]))
        else:
            parts.append(draft.content.as_part())
        parts.extend(render_parts(config.prompt_parts, request.context) or [text_part(CRITIC_PROMPT)])

        result = await RetryQuerier(request.step.max_retries).query(
            client,
            client.build_messages(history=request.history, suffix=parts),
            cache_salt=f"{request.cache_salt}_critique_{iteration}",
        )
        return result.content.data if result.content.kind == "text" else ""
