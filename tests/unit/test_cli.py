"""Unit tests for video_digest.cli - version, commands and exit codes."""

from __future__ import annotations

import json
import logging
from typing import TYPE_CHECKING

import httpx
import pytest
import respx
import structlog
from rich.console import Console
from typer.testing import CliRunner

from tests.conftest import ENDPOINT_URL, MODELS_URL, completion_body, sse_body
from video_digest import __version__
from video_digest.cli import app

if TYPE_CHECKING:
    from collections.abc import Iterator
    from pathlib import Path

runner = CliRunner()

SEGMENTS = json.dumps(
    {
        "segments": [
            {"timestamp": "00:05", "title": "Intro", "summary": "greeting"},
            {"timestamp": "01:00", "title": "广告", "summary": "Phone"},
        ]
    },
    ensure_ascii=False,
)


@pytest.fixture(autouse=True)
def _isolate(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> Iterator[None]:
    """Run every command from an empty directory with a wide console."""
    monkeypatch.chdir(tmp_path)
    monkeypatch.delenv("VIDEO_DIGEST_API_KEY", raising=False)
    monkeypatch.setattr("video_digest.cli.console", Console(width=200))
    monkeypatch.setattr("video_digest.cli.err_console", Console(width=200, stderr=True))
    yield
    logging.getLogger().handlers.clear()
    structlog.reset_defaults()


@pytest.fixture
def config_file(tmp_path: Path) -> Path:
    path = tmp_path / "test-config.yaml"
    path.write_text(
        "selected_provider: fake\n"
        "logging:\n"
        "  level: ERROR\n"
        "providers:\n"
        "  - id: fake\n"
        "    name: Fake LLM\n"
        f"    url: {ENDPOINT_URL}\n"
        "    api_key: sk-test\n"
        "    model: test-model\n"
        "  - id: nokey\n"
        f"    url: {ENDPOINT_URL}\n"
        "    model: test-model\n",
        encoding="utf-8",
    )
    return path


@pytest.fixture
def subtitle_file(tmp_path: Path) -> Path:
    path = tmp_path / "subtitles.json"
    path.write_text(
        json.dumps(
            {
                "body": [
                    {"content": "hello", "from": 0.0},
                    {"content": "world", "from": 5.0},
                ]
            }
        ),
        encoding="utf-8",
    )
    return path


def _upstream(request: httpx.Request) -> httpx.Response:
    if json.loads(request.content)["stream"]:
        return httpx.Response(
            200,
            content=sse_body("# Hi\n", "summary"),
            headers={"content-type": "text/event-stream"},
        )
    return httpx.Response(200, json=completion_body(SEGMENTS))


# ---- Version and help -------------------------------------------------------


class TestVersionAndHelp:
    """Version flag and help text output."""

    def test_version_flag(self) -> None:
        result = runner.invoke(app, ["--version"])
        assert result.exit_code == 0
        assert __version__ in result.output

    def test_short_version_flag(self) -> None:
        result = runner.invoke(app, ["-V"])
        assert result.exit_code == 0
        assert __version__ in result.output

    def test_help_lists_commands(self) -> None:
        result = runner.invoke(app, ["--help"])
        assert result.exit_code == 0
        assert "summarize" in result.output
        assert "providers" in result.output
        assert "models" in result.output

    def test_summarize_help(self) -> None:
        result = runner.invoke(app, ["summarize", "--help"])
        assert result.exit_code == 0
        assert "--video" in result.output
        assert "--force" in result.output
        assert "--json" in result.output


# ---- providers ----------------------------------------------------------------


class TestProvidersCommand:
    """providers lists presets or configured providers."""

    def test_lists_presets(self) -> None:
        result = runner.invoke(app, ["providers"])
        assert result.exit_code == 0
        assert "openrouter" in result.output
        assert "deepseek" in result.output

    def test_marks_selected_and_key(self, config_file: Path) -> None:
        result = runner.invoke(app, ["providers", "--config", str(config_file)])
        assert result.exit_code == 0
        assert "Fake LLM" in result.output
        assert "nokey" in result.output
        assert "set" in result.output

    def test_invalid_config_exits_1(self, tmp_path: Path) -> None:
        bad = tmp_path / "bad.yaml"
        bad.write_text("summary:\n  cache_size: 0\n", encoding="utf-8")
        result = runner.invoke(app, ["providers", "--config", str(bad)])
        assert result.exit_code == 1
        assert "Configuration error" in result.output


# ---- summarize ----------------------------------------------------------------


class TestSummarizeCommand:
    """summarize end to end against a mocked endpoint."""

    @respx.mock
    def test_prints_json_result(self, config_file: Path, subtitle_file: Path) -> None:
        route = respx.post(ENDPOINT_URL).mock(side_effect=_upstream)

        result = runner.invoke(
            app,
            [
                "summarize",
                str(subtitle_file),
                "--video",
                "BV1xx",
                "--media",
                "42",
                "--config",
                str(config_file),
                "--json",
            ],
        )

        assert result.exit_code == 0, result.output
        assert route.call_count == 2
        payload = json.loads(result.stdout)
        assert payload["narrative_markdown"] == "# Hi\nsummary"
        assert payload["segments"] == [
            {"timestamp_seconds": 5, "title": "Intro", "summary": "greeting"}
        ]
        assert payload["ads"][0]["start_seconds"] == 60
        assert payload["ads"][0]["end_seconds"] == 90

    @respx.mock
    def test_renders_tables(self, config_file: Path, subtitle_file: Path) -> None:
        respx.post(ENDPOINT_URL).mock(side_effect=_upstream)

        result = runner.invoke(
            app,
            [
                "summarize",
                str(subtitle_file),
                "-v",
                "BV1xx",
                "-m",
                "42",
                "-c",
                str(config_file),
            ],
        )

        assert result.exit_code == 0, result.output
        assert "Highlights" in result.output
        assert "[00:05]" in result.output
        assert "Advertisements" in result.output

    @respx.mock
    def test_upstream_error_exits_1(self, config_file: Path, subtitle_file: Path) -> None:
        respx.post(ENDPOINT_URL).mock(return_value=httpx.Response(500, text="boom"))

        result = runner.invoke(
            app,
            [
                "summarize",
                str(subtitle_file),
                "-v",
                "BV1xx",
                "-m",
                "42",
                "-c",
                str(config_file),
            ],
        )

        assert result.exit_code == 1
        assert "HTTP 500" in result.output

    def test_missing_api_key_exits_1(
        self, config_file: Path, subtitle_file: Path
    ) -> None:
        result = runner.invoke(
            app,
            [
                "summarize",
                str(subtitle_file),
                "-v",
                "BV1xx",
                "-m",
                "42",
                "-c",
                str(config_file),
                "--provider",
                "nokey",
            ],
        )
        assert result.exit_code == 1
        assert "API key" in result.output

    def test_unreadable_subtitles_exit_1(self, tmp_path: Path) -> None:
        broken = tmp_path / "broken.json"
        broken.write_text("{not json", encoding="utf-8")
        result = runner.invoke(app, ["summarize", str(broken), "-v", "BV1", "-m", "1"])
        assert result.exit_code == 1
        assert "Cannot read subtitles" in result.output

    def test_empty_subtitles_exit_1(self, tmp_path: Path) -> None:
        empty = tmp_path / "empty.json"
        empty.write_text('{"body": []}', encoding="utf-8")
        result = runner.invoke(app, ["summarize", str(empty), "-v", "BV1", "-m", "1"])
        assert result.exit_code == 1
        assert "No subtitle lines" in result.output

    def test_invalid_part_exits_1(self, subtitle_file: Path) -> None:
        result = runner.invoke(
            app, ["summarize", str(subtitle_file), "-v", "BV1", "-m", "1", "-p", "0"]
        )
        assert result.exit_code == 1
        assert "Invalid video identity" in result.output


# ---- models -------------------------------------------------------------------


class TestModelsCommand:
    """models queries the provider's model list."""

    @respx.mock
    def test_lists_models(self, config_file: Path) -> None:
        respx.get(MODELS_URL).mock(
            return_value=httpx.Response(
                200, json={"data": [{"id": "m1", "name": "Model One"}]}
            )
        )
        result = runner.invoke(app, ["models", "--config", str(config_file)])
        assert result.exit_code == 0
        assert "m1" in result.output
        assert "Model One" in result.output

    def test_missing_key_exits_1(self, config_file: Path) -> None:
        result = runner.invoke(
            app, ["models", "--config", str(config_file), "--provider", "nokey"]
        )
        assert result.exit_code == 1
        assert "Cannot list models" in result.output

    @respx.mock
    def test_mixed_model_entries(self, config_file: Path) -> None:
        respx.get(MODELS_URL).mock(
            return_value=httpx.Response(
                200, json={"data": ["plain-model", 3, {"id": "m2", "name": "Two"}]}
            )
        )
        result = runner.invoke(app, ["models", "--config", str(config_file)])
        assert result.exit_code == 0, result.output
        assert "plain-model" in result.output
        assert "Two" in result.output
        assert "Models (2)" in result.output
