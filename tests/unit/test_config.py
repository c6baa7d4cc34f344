"""Unit tests for video_digest.config - Settings loading and validation."""

from __future__ import annotations

from typing import TYPE_CHECKING

import pytest
from pydantic import ValidationError

from video_digest.config import (
    HTTPSettings,
    LoggingSettings,
    ProviderSettings,
    Settings,
    SummarySettings,
    format_validation_error,
    load_prompt,
)

if TYPE_CHECKING:
    from pathlib import Path


@pytest.fixture(autouse=True)
def _isolate_env(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    """Keep a developer's config.yaml, .env and env vars out of the tests."""
    monkeypatch.chdir(tmp_path)
    monkeypatch.delenv("VIDEO_DIGEST_API_KEY", raising=False)
    monkeypatch.delenv("VIDEO_DIGEST_SELECTED_PROVIDER", raising=False)


# ---- Sub-model defaults ------------------------------------------------------


class TestSummarySettings:
    """SummarySettings defaults and constraints."""

    def test_default_values(self) -> None:
        s = SummarySettings()
        assert s.narrative_timeout == 120.0
        assert s.ad_duration_seconds == 30
        assert s.cache_backend == "memory"
        assert s.cache_size == 10
        assert s.processed_retention_days == 30

    def test_non_positive_timeout_rejected(self) -> None:
        with pytest.raises(ValidationError):
            SummarySettings(narrative_timeout=0)

    def test_unknown_backend_rejected(self) -> None:
        with pytest.raises(ValidationError):
            SummarySettings(cache_backend="redis")  # type: ignore[arg-type]


class TestOtherSettings:
    """HTTP and logging defaults."""

    def test_http_defaults(self) -> None:
        s = HTTPSettings()
        assert s.referer.startswith("https://")
        assert s.app_title

    def test_logging_rejects_unknown_level(self) -> None:
        with pytest.raises(ValidationError):
            LoggingSettings(level="TRACE")  # type: ignore[arg-type]


# ---- Settings ------------------------------------------------------------------


class TestSettingsDefaults:
    """Settings ships provider presets."""

    def test_presets(self) -> None:
        s = Settings()
        ids = [p.id for p in s.providers]
        assert ids == [
            "openrouter",
            "openai",
            "siliconflow",
            "deepseek",
            "moonshot",
            "zhipu",
            "dashscope",
            "gemini",
        ]
        assert s.selected_provider == "openrouter"
        assert s.get_provider().requires_extra_headers  # type: ignore[union-attr]
        assert all(p.url.endswith("/chat/completions") for p in s.providers)


class TestSettingsLoading:
    """YAML, env and override layering."""

    def test_load_from_custom_yaml(self, tmp_path: Path) -> None:
        yaml_file = tmp_path / "custom.yaml"
        yaml_file.write_text(
            "selected_provider: deepseek\n"
            "summary:\n"
            "  narrative_timeout: 60\n"
            "  cache_backend: disk\n",
            encoding="utf-8",
        )
        s = Settings.load(config_path=yaml_file)
        assert s.selected_provider == "deepseek"
        assert s.summary.narrative_timeout == 60
        assert s.summary.cache_backend == "disk"
        assert s.summary.ad_duration_seconds == 30

    def test_missing_yaml_uses_defaults(self, tmp_path: Path) -> None:
        s = Settings.load(config_path=tmp_path / "nonexistent.yaml")
        assert s.summary.narrative_timeout == 120.0

    def test_env_overrides_yaml(
        self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        yaml_file = tmp_path / "config.yaml"
        yaml_file.write_text("summary:\n  narrative_timeout: 60\n", encoding="utf-8")
        monkeypatch.setenv("VIDEO_DIGEST_SUMMARY__NARRATIVE_TIMEOUT", "90")

        s = Settings.load(config_path=yaml_file)
        assert s.summary.narrative_timeout == 90

    def test_overrides_win(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("VIDEO_DIGEST_SELECTED_PROVIDER", "openai")
        s = Settings.load(selected_provider="gemini")
        assert s.selected_provider == "gemini"

    def test_invalid_value_raises(self, tmp_path: Path) -> None:
        yaml_file = tmp_path / "bad.yaml"
        yaml_file.write_text("summary:\n  cache_size: 0\n", encoding="utf-8")
        with pytest.raises(ValidationError):
            Settings.load(config_path=yaml_file)


class TestRequestConfig:
    """request_config freezes a provider for one summarize call."""

    def test_uses_selected_provider_and_packaged_prompts(self) -> None:
        s = Settings(
            providers=[
                ProviderSettings(
                    id="local",
                    url=" http://localhost:8000/v1/chat/completions ",
                    api_key=" key ",
                    model=" m1 ",
                )
            ],
            selected_provider="local",
        )
        config = s.request_config()

        assert config is not None
        assert config.endpoint_url == "http://localhost:8000/v1/chat/completions"
        assert config.api_key == "key"
        assert config.model == "m1"
        assert config.narrative_prompt == load_prompt("narrative")
        assert config.segment_prompt == load_prompt("segments")
        assert not config.provider_requires_extra_headers

    def test_global_api_key_overrides_provider_key(self) -> None:
        s = Settings(api_key="sk-global")
        config = s.request_config("openai")
        assert config is not None
        assert config.api_key == "sk-global"

    def test_custom_prompts(self) -> None:
        s = Settings(
            providers=[
                ProviderSettings(
                    id="p",
                    url="https://x.test/v1/chat/completions",
                    narrative_prompt="N:",
                    segment_prompt="S:",
                )
            ],
            selected_provider="p",
        )
        config = s.request_config()
        assert config is not None
        assert (config.narrative_prompt, config.segment_prompt) == ("N:", "S:")

    def test_unknown_provider_returns_none(self) -> None:
        assert Settings().request_config("nope") is None


class TestPrompts:
    """Packaged prompt templates."""

    def test_segment_prompt_describes_ad_convention(self) -> None:
        prompt = load_prompt("segments")
        assert '"segments"' in prompt
        assert "广告" in prompt

    def test_narrative_prompt_asks_for_markdown(self) -> None:
        assert "Markdown" in load_prompt("narrative")


class TestFormatValidationError:
    """format_validation_error renders one line per error."""

    def test_formats_location_and_input(self) -> None:
        with pytest.raises(ValidationError) as exc_info:
            SummarySettings(cache_size=0, narrative_timeout=-1)
        message = format_validation_error(exc_info.value)

        assert message.startswith("Configuration error:")
        assert "cache_size" in message
        assert "narrative_timeout" in message
        assert "(got 0)" in message
