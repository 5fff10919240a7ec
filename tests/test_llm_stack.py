"""Tests for prompt templates, stage LLM configs and the provider registry."""
import pytest

from app.services import llm_config
from app.services.llm_provider import LLMProvider, build_provider, list_providers, register_provider
from app.services.prompt_registry import get_prompt_with_meta, list_names, prompt_sha, render_prompt


def test_prompts_on_disk():
    assert {"fast_extraction", "referral_extraction"} <= set(list_names())
    meta = get_prompt_with_meta("fast_extraction", "v1")
    assert meta["variables"] == ["text"]
    assert meta["system"]
    assert meta["sha"] == prompt_sha(meta["body"])


def test_render_prompt_keeps_json_braces():
    system, prompt = render_prompt("fast_extraction", "v1", text="Re: Jane Citizen")
    assert "Re: Jane Citizen" in prompt
    assert '"nameConfidence"' in prompt
    assert "{text}" not in prompt
    assert system


def test_render_prompt_errors():
    with pytest.raises(LookupError):
        render_prompt("no_such_prompt", "v1", text="x")
    with pytest.raises(LookupError):
        render_prompt("referral_extraction", "v1")


def test_stage_configs():
    assert {"fast", "full", "full_reextract"} <= set(llm_config.list_llm_config_names())
    fast = llm_config.get_llm_config("fast")
    assert llm_config.generation_options(fast) == {"max_tokens": 256, "temperature": 0.0}


def test_missing_stage_config_falls_back_to_env_provider(monkeypatch):
    monkeypatch.setattr("app.config.LLM_PROVIDER", "ollama")
    cfg = llm_config.resolve_llm_config("does_not_exist")
    assert cfg == {"provider": "ollama", "options": {}}


def test_registry_builds_registered_provider():
    class EchoProvider(LLMProvider):
        def __init__(self, model):
            self.model = model

        async def generate(self, prompt: str, **kwargs) -> str:
            return prompt

    register_provider("echo-test", lambda cfg: EchoProvider(cfg.get("model", "")))
    assert "echo-test" in list_providers()
    provider = build_provider({"provider": "ECHO-TEST", "model": "m1"})
    assert isinstance(provider, EchoProvider)
    assert provider.model == "m1"


def test_unknown_provider():
    with pytest.raises(ValueError, match="Unknown LLM provider"):
        build_provider({"provider": "nope"})


def test_openai_requires_key(monkeypatch):
    monkeypatch.setattr("app.config.OPENAI_API_KEY", None)
    with pytest.raises(ValueError, match="api_key"):
        build_provider({"provider": "openai"})
