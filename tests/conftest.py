"""Shared pytest fixtures for the video-digest test suite."""

from __future__ import annotations

import asyncio
import json
from typing import Any

import httpx
import pytest

from video_digest.config import HTTPSettings, SummarySettings
from video_digest.models import SubtitleLine, SummaryRequestConfig, VideoIdentity

ENDPOINT_URL = "https://llm.test/v1/chat/completions"
MODELS_URL = "https://llm.test/v1/models"

DEFAULT_SEGMENT_CONTENT = json.dumps(
    {"segments": [{"timestamp": "00:05", "title": "Intro", "summary": "greeting"}]}
)


# ---------------------------------------------------------------------------
# Upstream payload builders
# ---------------------------------------------------------------------------


def sse_body(*deltas: str, done: bool = True) -> bytes:
    """Render text deltas as ``data:`` frames of a chat-completion stream."""
    lines = [
        "data: " + json.dumps({"choices": [{"delta": {"content": delta}}]}) + "\n"
        for delta in deltas
    ]
    if done:
        lines.append("data: [DONE]\n")
    return "".join(lines).encode()


def completion_body(content: str) -> dict[str, Any]:
    """Wrap model output in a non-streamed chat-completion body."""
    return {"choices": [{"message": {"role": "assistant", "content": content}}]}


# ---------------------------------------------------------------------------
# Fake upstream (httpx.MockTransport with an async handler)
# ---------------------------------------------------------------------------


class FakeUpstream:
    """Chat-completion endpoint that answers both summary calls.

    Streamed requests get the narrative, non-streamed ones the segment
    body. Every request is recorded. Setting a gate holds the
    corresponding response until the gate is set.
    """

    def __init__(
        self,
        narrative_deltas: tuple[str, ...] = ("Hi",),
        segment_content: str = DEFAULT_SEGMENT_CONTENT,
        *,
        narrative_status: int = 200,
        segment_status: int = 200,
        narrative_delay: float = 0.0,
    ) -> None:
        self.narrative_deltas = narrative_deltas
        self.segment_content = segment_content
        self.narrative_status = narrative_status
        self.segment_status = segment_status
        self.narrative_delay = narrative_delay
        self.narrative_gate: asyncio.Event | None = None
        self.segment_gate: asyncio.Event | None = None
        self.requests: list[httpx.Request] = []

    @property
    def narrative_calls(self) -> int:
        return sum(1 for r in self.requests if json.loads(r.content)["stream"])

    @property
    def segment_calls(self) -> int:
        return sum(1 for r in self.requests if not json.loads(r.content)["stream"])

    async def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        body = json.loads(request.content)

        if body["stream"]:
            if self.narrative_gate is not None:
                await self.narrative_gate.wait()
            if self.narrative_delay:
                await asyncio.sleep(self.narrative_delay)
            if self.narrative_status != 200:
                return httpx.Response(self.narrative_status, text="narrative failed")
            return httpx.Response(
                200,
                content=sse_body(*self.narrative_deltas),
                headers={"Content-Type": "text/event-stream"},
            )

        if self.segment_gate is not None:
            await self.segment_gate.wait()
        if self.segment_status != 200:
            return httpx.Response(self.segment_status, text="segment failed")
        return httpx.Response(200, json=completion_body(self.segment_content))

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self))


# ---------------------------------------------------------------------------
# Domain fixtures
# ---------------------------------------------------------------------------


@pytest.fixture()
def identity() -> VideoIdentity:
    return VideoIdentity(external_id="BV1xx411c7mD", media_id="123456", part_index=1)


@pytest.fixture()
def request_config() -> SummaryRequestConfig:
    return SummaryRequestConfig(
        endpoint_url=ENDPOINT_URL,
        api_key="sk-test",
        model="test-model",
        narrative_prompt="Summarize:\n",
        segment_prompt="Segments:\n",
    )


@pytest.fixture()
def subtitle_lines() -> list[SubtitleLine]:
    return [
        SubtitleLine(content="hello", start_seconds=0),
        SubtitleLine(content="world", start_seconds=5),
    ]


@pytest.fixture()
def summary_settings() -> SummarySettings:
    return SummarySettings(narrative_timeout=5.0, request_timeout=5.0)


@pytest.fixture()
def http_settings() -> HTTPSettings:
    return HTTPSettings(referer="https://www.bilibili.com", app_title="Test Title")


@pytest.fixture()
def fake_upstream() -> FakeUpstream:
    return FakeUpstream()
