import json
from dataclasses import replace
from typing import Any, List, Optional

from ..domain import ExtractedContent, GenerationResult, Message
from ..pipeline.artifacts import ArtifactEvent
from ..querier import RetryQuerier
from .base import GenerationRequest, GenerationServices, IGenerationStrategy


class StandardStrategy(IGenerationStrategy):
    """One request: system + history + user content (+ follow-ups), through the retry querier."""

    def __init__(self, services: GenerationServices):
        self.services = services

    async def generate(self, request: GenerationRequest) -> GenerationResult:
        step = request.step
        client = self.services.clients.create(
            replace(step.model, system_parts=request.system_parts, prompt_parts=[])
        )
        messages = client.build_messages(history=request.history, suffix=request.user_parts)
        messages.extend(request.followups)

        validators = []
        if step.verify_command and not request.skip_commands:
            async def _verify(content: ExtractedContent, value: Any):
                await self.services.commands.verify(
                    step.verify_command, content, request.context, request.tmp_dir
                )
            validators.append(_verify)

        result = await RetryQuerier(step.max_retries).query(
            client,
            messages,
            schema=request.schema,
            validators=validators,
            aspect_ratio=step.aspect_ratio,
            cache_salt=request.cache_salt,
        )
        content = result.content

        if request.schema is not None:
            history: Message = {
                "role": "assistant",
                "content": json.dumps(result.value, indent=2, ensure_ascii=False),
            }
        elif content.kind == "text":
            history = {"role": "assistant", "content": content.data}
        else:
            history = {"role": "assistant", "content": f"[Generated {content.kind}]"}

        path = await self.save(request, content, result.value)
        if path and step.command and not request.skip_commands:
            await self.services.commands.post_process(step.command, path, request.context)

        return GenerationResult(
            history_message=history,
            raw_result=result.value,
            column_value=result.value,
            content=content,
            artifact_path=path,
        )

    async def save(self, request: GenerationRequest, content: ExtractedContent,
                   value: Any, base: Optional[str] = None) -> Optional[str]:
        """Emits the artifact; the configured extension wins over the content's own."""
        if self.services.artifacts is None:
            return None
        if request.schema is not None:
            kind, payload, extension = "json", value, ".json"
        else:
            kind, payload, extension = content.kind, content.data, content.extension
        filename = (base or request.output_base) + (request.output_extension or extension)
        return await self.services.artifacts.emit(ArtifactEvent(
            row=request.row_index,
            step=request.step_index,
            type=kind,
            filename=filename,
            content=payload,
        ))
