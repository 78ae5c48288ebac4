"""Tests for engine and AI configuration loading."""

from pathlib import Path

import pytest

from codegen_recipes.ai.config import AiServiceConfig
from codegen_recipes.ai.config import GuardrailConfig
from codegen_recipes.ai.config import ModelPricing
from codegen_recipes.ai.config import ModelRef
from codegen_recipes.config import EngineConfig
from codegen_recipes.config import load_config
from codegen_recipes.errors import ConfigError

CONFIG_YAML = """
max_concurrency: 4
default_timeout: 30
template_paths:
  - templates
  - /opt/shared/templates
action_collision_policy: error
ai:
  provider: command
  command: "llm -m {model}"
  model: local-model
  fallbacks:
    - provider: litellm
      model: gpt-4o-mini
  guardrails:
    validate: python
    blocked_imports: [subprocess]
  cost_table:
    local-model: {input: 0, output: 0}
"""


class TestLoadConfig:
    def test_full_config(self, temp_dir):
        path = temp_dir / "codegen.yaml"
        path.write_text(CONFIG_YAML)

        config = load_config(path)

        assert config.max_concurrency == 4
        assert config.default_timeout == 30
        assert config.template_paths == [temp_dir / "templates", Path("/opt/shared/templates")]
        assert config.action_collision_policy == "error"
        assert config.ai.primary == ModelRef("command", "local-model")
        assert config.ai.fallbacks == [ModelRef("litellm", "gpt-4o-mini")]
        assert config.ai.guardrails.validate_as == "python"
        assert config.ai.cost_table["local-model"] == ModelPricing(0.0, 0.0)

    def test_empty_file_gives_defaults(self, temp_dir):
        path = temp_dir / "codegen.yaml"
        path.write_text("")

        assert load_config(path) == EngineConfig()

    def test_missing_file(self, temp_dir):
        with pytest.raises(ConfigError, match="Config file not found"):
            load_config(temp_dir / "missing.yaml")

    def test_invalid_yaml(self, temp_dir):
        path = temp_dir / "codegen.yaml"
        path.write_text("max_concurrency: [unclosed")

        with pytest.raises(ConfigError, match="Invalid YAML"):
            load_config(path)

    def test_not_a_mapping(self, temp_dir):
        path = temp_dir / "codegen.yaml"
        path.write_text("- just\n- a list\n")

        with pytest.raises(ConfigError, match="must contain a mapping"):
            load_config(path)

    def test_unknown_key(self, temp_dir):
        path = temp_dir / "codegen.yaml"
        path.write_text("max_workers: 3\n")

        with pytest.raises(ConfigError, match="Invalid engine config"):
            load_config(path)

    def test_validation_errors_reported_together(self, temp_dir):
        path = temp_dir / "codegen.yaml"
        path.write_text("max_concurrency: 0\nai:\n  temperature: 5\n")

        with pytest.raises(ConfigError) as exc_info:
            load_config(path)

        message = str(exc_info.value)
        assert "max_concurrency must be >= 1, got 0" in message
        assert "ai.temperature must be between 0 and 2, got 5" in message

    def test_bad_fallback_entry(self, temp_dir):
        path = temp_dir / "codegen.yaml"
        path.write_text("ai:\n  fallbacks:\n    - provider: litellm\n")

        with pytest.raises(ConfigError, match="Fallback entry missing 'model'"):
            load_config(path)


class TestAiServiceConfig:
    def test_command_provider_requires_command(self):
        errors = AiServiceConfig(provider="command").validate()
        assert "ai.command is required when provider is 'command'" in errors

    def test_with_overrides_ignores_none(self):
        config = AiServiceConfig(model="a", temperature=0.5).with_overrides(model="b", temperature=None)

        assert config.model == "b"
        assert config.temperature == 0.5

    @pytest.mark.parametrize(
        "value,expected",
        [
            ("gpt-4o", ModelRef("litellm", "gpt-4o")),
            ("command:local", ModelRef("command", "local")),
            ("anthropic/claude-sonnet-4-5", ModelRef("litellm", "anthropic/claude-sonnet-4-5")),
            ({"model": "m"}, ModelRef("litellm", "m")),
        ],
    )
    def test_model_ref_parse(self, value, expected):
        assert ModelRef.parse(value, "litellm") == expected

    def test_guardrail_fallback_required(self):
        errors = GuardrailConfig(on_failure="fallback").validate()
        assert errors == ["guardrails.fallback is required when on_failure is 'fallback'"]

    def test_guardrail_rules(self):
        rules = GuardrailConfig(validate_as="yaml", max_output_length=200, allowed_imports=[]).rules()

        assert rules == [
            "Output must be valid yaml.",
            "Output must be at most 200 characters.",
            "Only these imports are allowed: none.",
        ]
