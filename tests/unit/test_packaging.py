"""Packaging and version metadata tests."""

from __future__ import annotations

import importlib.metadata
import tomllib
from pathlib import Path

from video_digest import __version__


def _load_pyproject() -> dict[str, object]:
    pyproject = Path(__file__).resolve().parents[2] / "pyproject.toml"
    with pyproject.open("rb") as f:
        return tomllib.load(f)


def test_console_entrypoint_is_configured() -> None:
    data = _load_pyproject()
    scripts = data["project"]["scripts"]
    assert scripts["video-digest"] == "video_digest.cli:main"


def test_module_version_matches_pyproject() -> None:
    data = _load_pyproject()
    assert __version__ == data["project"]["version"]


def test_importlib_metadata_version_matches_when_installed() -> None:
    data = _load_pyproject()
    expected = data["project"]["version"]
    try:
        installed_version = importlib.metadata.version("video-digest")
    except importlib.metadata.PackageNotFoundError:
        installed_version = expected
    assert installed_version == expected


def test_prompt_templates_ship_with_package() -> None:
    import video_digest

    prompts = Path(video_digest.__file__).parent / "prompts"
    assert (prompts / "narrative.yaml").is_file()
    assert (prompts / "segments.yaml").is_file()
