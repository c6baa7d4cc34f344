"""video-digest: Deduplicated, fault-tolerant LLM summaries of video subtitles."""

from __future__ import annotations

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("video-digest")
except PackageNotFoundError:
    __version__ = "0.1.0"

__all__ = ["__version__"]
