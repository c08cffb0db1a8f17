"""
Step execution.
===============
Runs one step for one work unit: plugins in declared order, then either a
pass-through save or a generation strategy, then output routing.
"""
import asyncio
import json
import os
from typing import Any, Dict, List, Optional, Tuple

from ..domain import ContentPart, StepConfig, WorkUnit
from ..errors import ConfigurationError, PluginExecutionError, StepTimeoutError
from ..plugins.base import PluginExecutionContext, PluginRegistry, PluginServices
from ..strategies import GenerationRequest, GenerationServices, build_strategy
from ..utils import render_parts, render_template
from ..utils.schema import check_schema
from .artifacts import ArtifactEvent, output_filename
from .config import GlobalsConfig
from .logger import PipelineLogger
from .output import OutputRouter

_AUDIO_EXTENSIONS = {"mp3": ".mp3", "wav": ".wav"}


def part_extension(part: ContentPart) -> str:
    if part.get("type") == "image_url":
        url = part["image_url"]["url"]
        return ".png" if url.startswith("data:image/png") else ".jpg"
    if part.get("type") == "input_audio":
        fmt = part["input_audio"].get("format", "wav")
        return _AUDIO_EXTENSIONS.get(fmt, f".{fmt}")
    return ".txt"


def part_event(part: ContentPart) -> Tuple[str, Any]:
    if part.get("type") == "image_url":
        return "image", part["image_url"]["url"]
    if part.get("type") == "input_audio":
        return "audio", part["input_audio"]["data"]
    return "text", part.get("text", "")


class StepExecutor:
    """Executes steps; holds no per-row state."""

    def __init__(self, registry: PluginRegistry, plugin_services: PluginServices,
                 generation: GenerationServices, globals_cfg: GlobalsConfig,
                 router: Optional[OutputRouter] = None, logger: Optional[PipelineLogger] = None):
        self.registry = registry
        self.plugin_services = plugin_services
        self.generation = generation
        self.globals = globals_cfg
        self.router = router or OutputRouter()
        self.logger = logger or generation.logger

    async def execute(self, unit: WorkUnit, step: StepConfig, step_index: int) -> List[WorkUnit]:
        """
        Runs `step` for `unit` within the step timeout.

        Returns:
            Descendant units ready for the next step (empty when the row is dropped)
        """
        timeout = step.timeout if step.timeout is not None else self.globals.timeout
        try:
            return await asyncio.wait_for(self._run(unit, step, step_index), timeout=timeout)
        except asyncio.TimeoutError:
            raise StepTimeoutError(step_index, timeout) from None

    async def _run(self, unit: WorkUnit, step: StepConfig, step_index: int) -> List[WorkUnit]:
        units = [unit]
        for plugin_index, spec in enumerate(step.plugins):
            routed = await asyncio.gather(
                *[self._run_plugin(u, step, step_index, plugin_index) for u in units]
            )
            units = [child for children in routed for child in children]
            if not units:
                self.logger.row_dropped(unit.label, step_index, spec.plugin_id)
                return []

        generated = await asyncio.gather(*[self._generate(u, step, step_index) for u in units])
        return [child for children in generated for child in children]

    # =========================================================================
    # Plugins
    # =========================================================================

    def _locations(self, unit: WorkUnit, step: StepConfig, step_index: int) -> Tuple[str, Optional[str], str]:
        """(output base, explicit extension or None, temp dir) for this unit and step."""
        filename = output_filename(step.output_path, unit.view(), unit.label.replace(".", "-"), step_index)
        base, ext = os.path.splitext(filename)
        tmp_dir = os.path.join(self.globals.tmp_dir, f"{unit.original_index:03d}_{step_index:02d}")
        return base, ext or None, tmp_dir

    async def _run_plugin(self, unit: WorkUnit, step: StepConfig, step_index: int,
                          plugin_index: int) -> List[WorkUnit]:
        spec = step.plugins[plugin_index]
        plugin = self.registry.get(spec.kind)
        view = unit.view()
        base, ext, tmp_dir = self._locations(unit, step, step_index)
        context = PluginExecutionContext(
            row=view,
            row_index=unit.original_index,
            step_index=step_index,
            plugin_index=plugin_index,
            services=self.plugin_services,
            temp_dir=tmp_dir,
            output_basename=base,
            output_extension=ext or ".txt",
        )
        try:
            resolved = await plugin.resolve_config(dict(spec.config, id=spec.plugin_id), view, step.model)
            result = await plugin.execute(resolved, context)
        except (ConfigurationError, PluginExecutionError):
            raise
        except Exception as e:
            raise PluginExecutionError(spec.plugin_id, f"{type(e).__name__}: {e}") from e

        self.logger.plugin_packets(unit.label, step_index, spec.plugin_id, len(result.packets))
        return self.router.route_packets(unit, result.packets, spec.output, spec.plugin_id)

    # =========================================================================
    # Generation
    # =========================================================================

    def _resolve_schema(self, step: StepConfig, view: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        if step.json_schema is None or isinstance(step.json_schema, dict):
            return step.json_schema
        rendered = render_template(step.json_schema, view)
        try:
            schema = json.loads(rendered)
        except json.JSONDecodeError as e:
            raise ConfigurationError(f"Rendered schema is not valid JSON: {e}") from e
        check_schema(schema)
        return schema

    async def _generate(self, unit: WorkUnit, step: StepConfig, step_index: int) -> List[WorkUnit]:
        view = unit.view()
        prompt = render_parts(step.prompt_parts, view)
        system = render_parts(step.model.system_parts, view)
        base, ext, tmp_dir = self._locations(unit, step, step_index)

        if not prompt and not system:
            if not unit.pending_content:
                raise ConfigurationError(
                    f"Step {step_index + 1} has no prompt, no system content and no plugin content"
                )
            saved = await self._pass_through(unit, step, step_index, base, ext)
            history = {"role": "assistant", "content": f"[Saved {len(saved)} items from plugins]"}
            raw_result = saved
            user_turn = None
        else:
            request = GenerationRequest(
                step=step,
                step_index=step_index,
                row_index=unit.original_index,
                context=view,
                system_parts=system,
                user_parts=unit.pending_content + prompt,
                history=unit.history,
                schema=self._resolve_schema(step, view),
                output_base=base,
                output_extension=ext,
                tmp_dir=tmp_dir,
            )
            result = await build_strategy(step, self.generation).generate(request)
            history, raw_result = result.history_message, result.column_value
            user_turn = {"role": "user", "content": prompt or list(unit.pending_content)}

        descendants = self.router.route_value(unit, raw_result, step.output, f"step {step_index + 1}")
        for child in descendants:
            child.history = child.history + ([user_turn] if user_turn else []) + [history]
            child.step_history.append(raw_result)
            child.pending_content = []
            child.next_step_index = step_index + 1
        return descendants

    async def _pass_through(self, unit: WorkUnit, step: StepConfig, step_index: int,
                            base: str, ext: Optional[str]) -> List[str]:
        """Saves plugin content verbatim, one artifact per block."""
        parts = unit.pending_content
        saved = []
        for i, part in enumerate(parts):
            suffix = f"_{i + 1}" if len(parts) > 1 else ""
            filename = f"{base}{suffix}{ext or part_extension(part)}"
            kind, content = part_event(part)
            if self.generation.artifacts is not None:
                path = await self.generation.artifacts.emit(ArtifactEvent(
                    row=unit.original_index, step=step_index, type=kind, filename=filename, content=content,
                ))
                filename = path or filename
                if step.command:
                    await self.generation.commands.post_process(step.command, filename, unit.view())
            saved.append(filename)
        return saved
