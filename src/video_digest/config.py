"""Configuration with 4-layer resolution: defaults -> YAML -> env -> overrides.

Uses pydantic-settings with YamlConfigSettingsSource for layered configuration.
Supports ``.env`` file loading, ``VIDEO_DIGEST_`` prefixed env vars, and
nested delimiter ``__`` for overriding sub-model fields.
"""

from __future__ import annotations

from functools import cache
from pathlib import Path
from typing import Any, ClassVar, Literal

import structlog
import yaml
from pydantic import BaseModel, Field, ValidationError
from pydantic_settings import (
    BaseSettings,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
)

from video_digest.models import SummaryRequestConfig
from video_digest.parsing import DEFAULT_AD_DURATION_SECONDS

try:
    from pydantic_settings import YamlConfigSettingsSource
except ImportError:  # pragma: no cover
    YamlConfigSettingsSource = None  # type: ignore[assignment, misc]

logger: structlog.stdlib.BoundLogger = structlog.get_logger(__name__)

_PROMPTS_DIR = Path(__file__).parent / "prompts"


# ---------------------------------------------------------------------------
# Prompt loading
# ---------------------------------------------------------------------------


@cache
def load_prompt(name: str) -> str:
    """Load a packaged prompt template from YAML.

    Args:
        name: Template file stem (``"narrative"`` or ``"segments"``).

    Returns:
        The template text; the transcript is appended to it verbatim.
    """
    path = _PROMPTS_DIR / f"{name}.yaml"
    with path.open(encoding="utf-8") as f:
        data: dict[str, str] = yaml.safe_load(f)
    return data["template"]


# ---------------------------------------------------------------------------
# Sub-models
# ---------------------------------------------------------------------------


class ProviderSettings(BaseModel):
    """An OpenAI-compatible chat-completion provider."""

    id: str
    name: str = ""
    url: str = Field(description="Chat completions endpoint URL.")
    api_key: str = ""
    model: str = ""
    narrative_prompt: str | None = Field(
        default=None, description="Overrides the packaged narrative prompt."
    )
    segment_prompt: str | None = Field(
        default=None, description="Overrides the packaged segment prompt."
    )
    requires_extra_headers: bool = Field(
        default=False,
        description="Send HTTP-Referer and X-Title (OpenRouter attribution).",
    )


def _default_providers() -> list[ProviderSettings]:
    return [
        ProviderSettings(
            id="openrouter",
            name="OpenRouter",
            url="https://openrouter.ai/api/v1/chat/completions",
            model="alibaba/tongyi-deepresearch-30b-a3b:free",
            requires_extra_headers=True,
        ),
        ProviderSettings(
            id="openai",
            name="OpenAI",
            url="https://api.openai.com/v1/chat/completions",
            model="gpt-4o-mini",
        ),
        ProviderSettings(
            id="siliconflow",
            name="SiliconFlow",
            url="https://api.siliconflow.cn/v1/chat/completions",
            model="Qwen/Qwen2.5-7B-Instruct",
        ),
        ProviderSettings(
            id="deepseek",
            name="DeepSeek",
            url="https://api.deepseek.com/v1/chat/completions",
            model="deepseek-chat",
        ),
        ProviderSettings(
            id="moonshot",
            name="Moonshot",
            url="https://api.moonshot.cn/v1/chat/completions",
            model="moonshot-v1-8k",
        ),
        ProviderSettings(
            id="zhipu",
            name="Zhipu",
            url="https://open.bigmodel.cn/api/paas/v4/chat/completions",
            model="glm-4-flash",
        ),
        ProviderSettings(
            id="dashscope",
            name="DashScope",
            url="https://dashscope.aliyuncs.com/compatible-mode/v1/chat/completions",
            model="qwen-plus",
        ),
        ProviderSettings(
            id="gemini",
            name="Gemini",
            url="https://generativelanguage.googleapis.com/v1beta/openai/chat/completions",
            model="gemini-2.0-flash",
        ),
    ]


class SummarySettings(BaseModel):
    """Timeouts, heuristics and cache settings for summarization."""

    narrative_timeout: float = Field(
        default=120.0, gt=0.0, description="Budget for the streamed narrative call."
    )
    request_timeout: float = Field(
        default=120.0, gt=0.0, description="Per-read HTTP timeout in seconds."
    )
    connect_timeout: float = Field(default=10.0, gt=0.0)
    ad_duration_seconds: int = Field(
        default=DEFAULT_AD_DURATION_SECONDS,
        gt=0,
        description="Assumed ad length when the model only gives a start time.",
    )
    cache_backend: Literal["memory", "disk"] = "memory"
    cache_size: int = Field(default=10, gt=0, description="LRU size (memory backend).")
    cache_dir: Path = Path("./data/summary_cache")
    cache_ttl_seconds: int = Field(default=7 * 86400, gt=0)
    processed_retention_days: int = Field(
        default=30,
        gt=0,
        description="How long an automatic run suppresses further automatic runs.",
    )


class HTTPSettings(BaseModel):
    """Attribution headers for providers that require them."""

    referer: str = "https://www.bilibili.com"
    app_title: str = "Bilibili Subtitle Extractor"


class LoggingSettings(BaseModel):
    """Logging / observability configuration."""

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = "INFO"
    format: Literal["console", "json"] = "console"
    file: Path | None = None


# ---------------------------------------------------------------------------
# Main Settings (4-layer resolution)
# ---------------------------------------------------------------------------


class Settings(BaseSettings):
    """Top-level application settings.

    Resolution order (last wins):
        1. Field defaults (defined above)
        2. YAML config file (``config.yaml`` or ``--config`` path)
        3. Environment variables (prefixed ``VIDEO_DIGEST_``)
        4. Programmatic overrides (CLI flags)
    """

    model_config = SettingsConfigDict(
        env_prefix="VIDEO_DIGEST_",
        env_nested_delimiter="__",
        env_file=".env",
        env_file_encoding="utf-8",
        yaml_file="config.yaml",
        yaml_file_encoding="utf-8",
        extra="ignore",
    )

    _config_path_override: ClassVar[Path | None] = None

    providers: list[ProviderSettings] = Field(default_factory=_default_providers)
    selected_provider: str = "openrouter"
    api_key: str | None = Field(
        default=None, description="Overrides the selected provider's API key."
    )
    summary: SummarySettings = Field(default_factory=SummarySettings)
    http: HTTPSettings = Field(default_factory=HTTPSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        """Customise settings source priority.

        Resolution order (first = highest priority):
            init_settings > env_settings > dotenv (.env) > yaml > defaults
        """
        sources: list[PydanticBaseSettingsSource] = [
            init_settings,
            env_settings,
            dotenv_settings,
        ]

        if YamlConfigSettingsSource is not None:
            yaml_file = cls._config_path_override or settings_cls.model_config.get(
                "yaml_file", "config.yaml"
            )
            sources.append(YamlConfigSettingsSource(settings_cls, yaml_file=yaml_file))

        return tuple(sources)

    @classmethod
    def load(cls, config_path: Path | None = None, **overrides: Any) -> Settings:
        """Load settings with optional config path and overrides.

        Args:
            config_path: Optional path to a YAML config file.
            **overrides: Key-value overrides applied at highest priority.

        Returns:
            Fully-resolved Settings instance.

        Raises:
            ValidationError: If any setting value fails validation.
        """
        cls._config_path_override = config_path
        try:
            return cls(**overrides)
        finally:
            cls._config_path_override = None

    def get_provider(self, provider_id: str | None = None) -> ProviderSettings | None:
        """Return the provider with ``provider_id`` (default: the selected one)."""
        wanted = provider_id or self.selected_provider
        for provider in self.providers:
            if provider.id == wanted:
                return provider
        return None

    def request_config(self, provider_id: str | None = None) -> SummaryRequestConfig | None:
        """Freeze the selected provider into a per-invocation request config.

        Returns ``None`` when no provider matches, which the service
        reports as a missing configuration.
        """
        provider = self.get_provider(provider_id)
        if provider is None:
            logger.debug(
                "provider_not_found",
                provider=provider_id or self.selected_provider,
                known=[p.id for p in self.providers],
            )
            return None

        return SummaryRequestConfig(
            endpoint_url=provider.url.strip(),
            api_key=(self.api_key or provider.api_key).strip(),
            model=provider.model.strip(),
            narrative_prompt=provider.narrative_prompt or load_prompt("narrative"),
            segment_prompt=provider.segment_prompt or load_prompt("segments"),
            provider_requires_extra_headers=provider.requires_extra_headers,
        )


def format_validation_error(exc: ValidationError) -> str:
    """Format a Pydantic ValidationError into a user-friendly message.

    Args:
        exc: The validation error to format.

    Returns:
        A multi-line string with each error on its own line.
    """
    lines: list[str] = []
    for error in exc.errors():
        loc = " -> ".join(str(part) for part in error["loc"])
        msg = error["msg"]
        raw_input = error.get("input")
        if raw_input is not None:
            lines.append(f"  {loc}: {msg} (got {raw_input!r})")
        else:
            lines.append(f"  {loc}: {msg}")
    return "Configuration error:\n" + "\n".join(lines)
