"""
Pipeline configuration.
=======================
Centralizes limits and defaults, and turns the JSON configuration document
into typed step configs.
"""
import base64
import json
import mimetypes
import os
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from ..domain import ContentPart, ModelConfig, PluginSpec, StepConfig, audio_part, image_part, text_part
from ..errors import ConfigurationError
from ..utils.schema import check_schema
from .output import resolve_output_strategy

DEFAULT_MODEL = "gpt-4o-mini"


class Limits:
    """Pipeline limits and thresholds."""
    CONCURRENCY = 50
    TASK_CONCURRENCY = 100
    BROWSER_PAGES = 4
    TIMEOUT_SECONDS = 180.0
    MAX_RETRIES = 3
    CRAWL_BUDGET = 10
    CRAWL_BATCH_SIZE = 3
    MAX_CANDIDATE_LINKS = 50
    PAGE_TEXT_LIMIT = 20000
    URL_EXPANDER_CHARS = 30000
    WEB_SEARCH_LIMIT = 5


class Defaults:
    """Built-in settings that configuration may override."""
    TMP_DIR = ".tmp"
    MASTER_OUTPUT = {"mode": "ignore", "explode": False}
    PLUGIN_OUTPUTS = {
        "validation": {"mode": "ignore"},
        "dedupe": {"mode": "ignore"},
        "url-expander": {"mode": "ignore"},
        "website-agent": {"mode": "ignore"},
        "web-search": {"mode": "ignore"},
    }


IMAGE_EXTENSIONS = {".png", ".jpg", ".jpeg", ".gif", ".webp"}
AUDIO_EXTENSIONS = {".mp3": "mp3", ".wav": "wav"}


@dataclass
class GlobalsConfig:
    """Run-wide settings every step inherits."""
    model: str = DEFAULT_MODEL
    temperature: Optional[float] = None
    thinking_level: Optional[str] = None
    concurrency: int = Limits.CONCURRENCY
    task_concurrency: int = Limits.TASK_CONCURRENCY
    browser_pages: int = Limits.BROWSER_PAGES
    tmp_dir: str = Defaults.TMP_DIR
    timeout: float = Limits.TIMEOUT_SECONDS
    max_retries: int = Limits.MAX_RETRIES
    output_path: Optional[str] = None
    output: Dict[str, Any] = field(default_factory=lambda: dict(Defaults.MASTER_OUTPUT))
    plugin_outputs: Dict[str, Dict[str, Any]] = field(default_factory=dict)

    @staticmethod
    def from_dict(d):
        known = {k: v for k, v in (d or {}).items() if k in GlobalsConfig.__dataclass_fields__}
        unknown = set(d or {}) - set(known)
        if unknown:
            raise ConfigurationError(f"Unknown globals: {sorted(unknown)}")
        cfg = GlobalsConfig(**known)
        if cfg.concurrency < 1 or cfg.task_concurrency < 1 or cfg.browser_pages < 1:
            raise ConfigurationError("Concurrency limits must be at least 1")
        return cfg

    def category_output(self, category: str) -> Dict[str, Any]:
        base = dict(Defaults.PLUGIN_OUTPUTS.get(category, {}))
        base.update(self.plugin_outputs.get(category) or {})
        return base

    def base_model(self) -> ModelConfig:
        return ModelConfig(
            model=self.model,
            temperature=self.temperature,
            reasoning_effort=self.thinking_level,
        )


@dataclass
class PipelineConfig:
    globals: GlobalsConfig
    steps: List[StepConfig]
    base_dir: str = "."


# =============================================================================
# Prompt loading
# =============================================================================

def _file_parts(path: str) -> List[ContentPart]:
    if os.path.isdir(path):
        parts = []
        for name in sorted(os.listdir(path)):
            child = os.path.join(path, name)
            if os.path.isfile(child):
                parts.extend(_file_parts(child))
        return parts

    ext = os.path.splitext(path)[1].lower()
    if ext in IMAGE_EXTENSIONS:
        mime = mimetypes.guess_type(path)[0] or "image/png"
        with open(path, "rb") as f:
            encoded = base64.b64encode(f.read()).decode("ascii")
        return [image_part(f"data:{mime};base64,{encoded}")]
    if ext in AUDIO_EXTENSIONS:
        with open(path, "rb") as f:
            encoded = base64.b64encode(f.read()).decode("ascii")
        return [audio_part(encoded, AUDIO_EXTENSIONS[ext])]
    with open(path, "r", encoding="utf-8") as f:
        return [text_part(f.read())]


def load_prompt_parts(definition: Any, base_dir: str = ".") -> List[ContentPart]:
    """
    Accepts an inline string, a path to a file or directory, a
    `{"file": ...}` / `{"text": ...}` object, a ready content part, or a list
    of any of these.
    """
    if definition is None:
        return []
    if isinstance(definition, list):
        parts = []
        for item in definition:
            parts.extend(load_prompt_parts(item, base_dir))
        return parts
    if isinstance(definition, dict):
        if "type" in definition:
            return [definition]
        if "file" in definition:
            path = os.path.join(base_dir, definition["file"])
            if not os.path.exists(path):
                raise ConfigurationError(f"Prompt file not found: {path}")
            return _file_parts(path)
        if "text" in definition:
            return [text_part(str(definition["text"]))]
        raise ConfigurationError(f"Unrecognized prompt definition: {definition}")
    if isinstance(definition, str):
        candidate = os.path.join(base_dir, definition)
        if len(definition) < 1024 and "\n" not in definition and os.path.isfile(candidate):
            return _file_parts(candidate)
        return [text_part(definition)]
    raise ConfigurationError(f"Unrecognized prompt definition: {definition!r}")


def resolve_model_config(raw: Any, inherited: ModelConfig, base_dir: str = ".") -> ModelConfig:
    """More specific settings win: `raw` over `inherited`. A bare string names the model."""
    if raw is None:
        raw = {}
    elif isinstance(raw, str):
        raw = {"model": raw}
    elif not isinstance(raw, dict):
        raise ConfigurationError(f"Model settings must be an object or model name, got {raw!r}")

    return ModelConfig(
        model=raw.get("model") or inherited.model,
        temperature=raw["temperature"] if raw.get("temperature") is not None else inherited.temperature,
        reasoning_effort=raw.get("thinking_level") or inherited.reasoning_effort,
        system_parts=load_prompt_parts(raw["system"], base_dir) if "system" in raw else list(inherited.system_parts),
        prompt_parts=load_prompt_parts(raw["prompt"], base_dir) if "prompt" in raw else list(inherited.prompt_parts),
    )


# =============================================================================
# Steps
# =============================================================================

def _load_schema(raw: Any, base_dir: str) -> Any:
    if raw is None or isinstance(raw, dict):
        if raw is not None:
            check_schema(raw)
        return raw
    if isinstance(raw, str):
        path = os.path.join(base_dir, raw)
        if raw.endswith(".json") and os.path.isfile(path):
            with open(path, "r", encoding="utf-8") as f:
                schema = json.load(f)
            check_schema(schema)
            return schema
        # Template rendered per row
        return raw
    raise ConfigurationError(f"Schema must be an object, a .json path or a template, got {raw!r}")


def _parse_plugins(raw_plugins: Any, step_index: int, globals_cfg: GlobalsConfig) -> List[PluginSpec]:
    from ..plugins.base import PluginKind

    if raw_plugins is None:
        return []
    if not isinstance(raw_plugins, list):
        raise ConfigurationError(f"Step {step_index + 1}: plugins must be a list")

    specs = []
    for plugin_index, raw in enumerate(raw_plugins):
        if not isinstance(raw, dict) or "type" not in raw:
            raise ConfigurationError(f"Step {step_index + 1}: plugin #{plugin_index + 1} needs a 'type'")
        kind = PluginKind.parse(raw["type"])
        specs.append(PluginSpec(
            kind=kind.value,
            plugin_id=raw.get("id") or f"{kind.value}-{step_index}-{plugin_index}",
            config={k: v for k, v in raw.items() if k not in ("type", "id", "output")},
            output=resolve_output_strategy(
                raw.get("output"), globals_cfg.category_output(kind.value), globals_cfg.output
            ),
        ))
    return specs


def parse_step(raw: Dict[str, Any], step_index: int, globals_cfg: GlobalsConfig,
               base_dir: str = ".") -> StepConfig:
    if not isinstance(raw, dict):
        raise ConfigurationError(f"Step {step_index + 1} must be an object")

    model = resolve_model_config(raw.get("model"), globals_cfg.base_model(), base_dir)
    if "system" in raw:
        model.system_parts = load_prompt_parts(raw["system"], base_dir)
    prompt_parts = load_prompt_parts(raw["prompt"], base_dir) if "prompt" in raw else model.prompt_parts

    candidates = raw.get("candidates", 1)
    if not isinstance(candidates, int) or candidates < 1:
        raise ConfigurationError(f"Step {step_index + 1}: candidates must be a positive integer")

    role_base = ModelConfig(
        model=model.model, temperature=model.temperature, reasoning_effort=model.reasoning_effort
    )
    judge = resolve_model_config(raw["judge"], role_base, base_dir) if raw.get("judge") else None

    feedback, loops = None, 0
    if raw.get("feedback"):
        feedback_raw = dict(raw["feedback"])
        loops = feedback_raw.pop("loops", 0)
        if not isinstance(loops, int) or loops < 0:
            raise ConfigurationError(f"Step {step_index + 1}: feedback loops must be a non-negative integer")
        feedback = resolve_model_config(feedback_raw, role_base, base_dir)

    max_retries = raw.get("max_retries", globals_cfg.max_retries)
    if not isinstance(max_retries, int) or max_retries < 1:
        raise ConfigurationError(f"Step {step_index + 1}: max_retries must be at least 1")

    return StepConfig(
        model=model,
        prompt_parts=prompt_parts,
        json_schema=_load_schema(raw.get("schema"), base_dir),
        plugins=_parse_plugins(raw.get("plugins"), step_index, globals_cfg),
        output=resolve_output_strategy(
            raw.get("output"), globals_cfg.category_output("model"), globals_cfg.output
        ),
        candidates=candidates,
        judge=judge,
        feedback=feedback,
        feedback_loops=loops,
        timeout=raw.get("timeout"),
        aspect_ratio=raw.get("aspect_ratio"),
        verify_command=raw.get("verify_command"),
        command=raw.get("command"),
        skip_candidate_command=bool(raw.get("skip_candidate_command", False)),
        output_path=raw.get("output_path") or globals_cfg.output_path,
        max_retries=max_retries,
    )


def parse_pipeline_config(data: Dict[str, Any], base_dir: str = ".") -> PipelineConfig:
    if not isinstance(data, dict):
        raise ConfigurationError("Pipeline configuration must be a JSON object")
    globals_cfg = GlobalsConfig.from_dict(data.get("globals"))
    raw_steps = data.get("steps")
    if not isinstance(raw_steps, list) or not raw_steps:
        raise ConfigurationError("Pipeline configuration needs a non-empty 'steps' list")
    steps = [parse_step(raw, i, globals_cfg, base_dir) for i, raw in enumerate(raw_steps)]
    return PipelineConfig(globals=globals_cfg, steps=steps, base_dir=base_dir)


def load_pipeline_config(path: str) -> PipelineConfig:
    with open(path, "r", encoding="utf-8") as f:
        try:
            data = json.load(f)
        except json.JSONDecodeError as e:
            raise ConfigurationError(f"Config {path} is not valid JSON: {e}") from e
    return parse_pipeline_config(data, base_dir=os.path.dirname(os.path.abspath(path)))
