import sys
import os
sys.path.append(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import json

import pytest

from rowpipe.domain import ModelConfig, OutputStrategy, text_part
from rowpipe.errors import ConfigurationError
from rowpipe.pipeline.config import (
    DEFAULT_MODEL, GlobalsConfig, load_pipeline_config, load_prompt_parts,
    parse_pipeline_config, resolve_model_config,
)


def test_minimal_config_uses_defaults():
    config = parse_pipeline_config({"steps": [{"prompt": "Summarize {{text}}"}]})
    step = config.steps[0]
    assert step.model.model == DEFAULT_MODEL
    assert step.prompt_parts == [text_part("Summarize {{text}}")]
    assert step.output == OutputStrategy(mode="ignore")
    assert step.max_retries == 3
    assert step.candidates == 1


def test_model_settings_precedence():
    data = {
        "globals": {"model": "global-model", "temperature": 0.1, "thinking_level": "low"},
        "steps": [
            {"prompt": "a"},
            {"prompt": "b", "model": {"model": "step-model", "temperature": 0.9}},
            {"prompt": "c", "model": "named-model"},
        ],
    }
    first, second, third = parse_pipeline_config(data).steps
    assert (first.model.model, first.model.temperature, first.model.reasoning_effort) == ("global-model", 0.1, "low")
    assert (second.model.model, second.model.temperature, second.model.reasoning_effort) == ("step-model", 0.9, "low")
    assert third.model.model == "named-model"


def test_step_system_overrides_model_system():
    data = {"steps": [{"prompt": "p", "system": "Step system", "model": {"system": "Model system"}}]}
    step = parse_pipeline_config(data).steps[0]
    assert step.model.system_parts == [text_part("Step system")]


def test_temperature_zero_is_kept():
    inherited = ModelConfig(model="m", temperature=0.7)
    assert resolve_model_config({"temperature": 0}, inherited).temperature == 0


def test_unknown_plugin_type_is_rejected():
    with pytest.raises(ConfigurationError, match="Unknown plugin type"):
        parse_pipeline_config({"steps": [{"plugins": [{"type": "screenshot"}]}]})


def test_plugin_ids_and_output_defaults():
    data = {
        "globals": {"plugin_outputs": {"website-agent": {"mode": "merge"}}},
        "steps": [{"prompt": "x", "plugins": [
            {"type": "website-agent", "url": "{{site}}"},
            {"type": "dedupe", "id": "by-name", "key": "{{name}}", "output": {"mode": "column", "column": "d"}},
        ]}],
    }
    agent, dedupe = parse_pipeline_config(data).steps[0].plugins
    assert agent.plugin_id == "website-agent-0-0"
    assert agent.output.mode == "merge"
    assert agent.config == {"url": "{{site}}"}
    assert dedupe.plugin_id == "by-name"
    assert dedupe.output == OutputStrategy(mode="column", column="d")


def test_feedback_and_judge_inherit_step_model():
    data = {"steps": [{
        "prompt": "x",
        "model": "writer",
        "candidates": 3,
        "judge": {"system": "Be fair."},
        "feedback": {"loops": 2, "model": "critic"},
    }]}
    step = parse_pipeline_config(data).steps[0]
    assert step.judge.model == "writer"
    assert step.judge.system_parts == [text_part("Be fair.")]
    assert step.feedback.model == "critic"
    assert step.feedback_loops == 2


@pytest.mark.parametrize("step", [
    {"prompt": "x", "candidates": 0},
    {"prompt": "x", "max_retries": 0},
    {"prompt": "x", "feedback": {"loops": -1}},
    {"prompt": "x", "output": {"mode": "column"}},
    {"prompt": "x", "output": {"mode": "append"}},
    {"prompt": "x", "schema": {"type": "nope"}},
])
def test_invalid_steps_are_rejected(step):
    with pytest.raises(ConfigurationError):
        parse_pipeline_config({"steps": [step]})


def test_invalid_globals_are_rejected():
    with pytest.raises(ConfigurationError):
        GlobalsConfig.from_dict({"concurency": 4})
    with pytest.raises(ConfigurationError):
        GlobalsConfig.from_dict({"concurrency": 0})
    with pytest.raises(ConfigurationError):
        parse_pipeline_config({"steps": []})


def test_prompt_files_and_directories(tmp_path):
    prompts = tmp_path / "prompts"
    prompts.mkdir()
    (prompts / "b.txt").write_text("second", encoding="utf-8")
    (prompts / "a.txt").write_text("first", encoding="utf-8")
    (prompts / "logo.png").write_bytes(b"\x89PNG")

    parts = load_prompt_parts("prompts", str(tmp_path))
    assert parts[0] == text_part("first")
    assert parts[1] == text_part("second")
    assert parts[2]["type"] == "image_url"
    assert parts[2]["image_url"]["url"].startswith("data:image/png;base64,")

    assert load_prompt_parts({"file": "prompts/a.txt"}, str(tmp_path)) == [text_part("first")]
    assert load_prompt_parts(["inline", {"text": "more"}], str(tmp_path)) == [text_part("inline"), text_part("more")]
    with pytest.raises(ConfigurationError):
        load_prompt_parts({"file": "missing.txt"}, str(tmp_path))


def test_load_pipeline_config_resolves_paths_next_to_file(tmp_path):
    (tmp_path / "schema.json").write_text(json.dumps({"type": "object"}), encoding="utf-8")
    (tmp_path / "system.txt").write_text("You are careful.", encoding="utf-8")
    config_path = tmp_path / "pipeline.json"
    config_path.write_text(json.dumps({
        "steps": [{"prompt": "Go", "system": "system.txt", "schema": "schema.json"}]
    }), encoding="utf-8")

    config = load_pipeline_config(str(config_path))
    step = config.steps[0]
    assert step.json_schema == {"type": "object"}
    assert step.model.system_parts == [text_part("You are careful.")]


def test_broken_json_file_is_configuration_error(tmp_path):
    path = tmp_path / "broken.json"
    path.write_text("{steps: [", encoding="utf-8")
    with pytest.raises(ConfigurationError):
        load_pipeline_config(str(path))
