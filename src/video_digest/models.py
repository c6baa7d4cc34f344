"""Data models shared across the summarization pipeline.

Pydantic models for video identity, subtitle input, the structured
summary result, and the per-invocation request configuration.
"""

from __future__ import annotations

from enum import StrEnum

from pydantic import BaseModel, ConfigDict, Field

# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class TaskStatus(StrEnum):
    """Lifecycle state of a coordinator task."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in _TERMINAL_STATUSES


_TERMINAL_STATUSES = frozenset(
    {TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.CANCELLED}
)


class TaskKind(StrEnum):
    """Kinds of deduplicated work tracked by the coordinator."""

    AI_SUMMARY = "ai_summary"


# ---------------------------------------------------------------------------
# Identity and input
# ---------------------------------------------------------------------------


class VideoIdentity(BaseModel):
    """One playable unit: a specific part of a specific media item.

    Distinct parts of a multi-part video are distinct identities.
    """

    model_config = ConfigDict(frozen=True)

    external_id: str = Field(description="Public video ID (e.g. a BV id).")
    media_id: str = Field(description="Media/stream ID of the part (e.g. a cid).")
    part_index: int = Field(default=1, ge=1, description="1-based part number.")

    @property
    def key(self) -> str:
        """Stable string form used for log binding, events and disk keys."""
        return f"{self.external_id}-{self.media_id}-p{self.part_index}"


class SubtitleLine(BaseModel):
    """A single subtitle line with its start offset."""

    model_config = ConfigDict(populate_by_name=True)

    content: str
    start_seconds: float = Field(default=0.0, ge=0.0, alias="from")


class TranscriptBodies(BaseModel):
    """The two transcript renderings sent upstream.

    Attributes:
        plain: Newline-joined subtitle text without timestamps, used by the
            narrative request.
        timestamped: One ``[MM:SS] content`` line per subtitle, used by the
            segment request.
    """

    model_config = ConfigDict(frozen=True)

    plain: str
    timestamped: str


# ---------------------------------------------------------------------------
# Summary result
# ---------------------------------------------------------------------------


class Segment(BaseModel):
    """A timestamped highlight extracted by the LLM."""

    timestamp_seconds: int = Field(ge=0)
    title: str = ""
    summary: str = ""

    @property
    def timestamp(self) -> str:
        """``[MM:SS]`` display form, with minutes counted past the hour."""
        return format_timestamp(self.timestamp_seconds)


class AdSegment(BaseModel):
    """A promotional span, carried separately from narrative segments."""

    start_seconds: int = Field(ge=0)
    end_seconds: int = Field(ge=0)
    product: str = ""
    description: str = ""


class SummaryResult(BaseModel):
    """The unit cached per video and returned to callers."""

    narrative_markdown: str
    segments: list[Segment] = Field(default_factory=list)
    ads: list[AdSegment] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Request configuration
# ---------------------------------------------------------------------------


class SummaryRequestConfig(BaseModel):
    """Provider settings frozen for the duration of one summarize call.

    Values are not validated here; the service checks them and raises
    the matching configuration error.
    """

    model_config = ConfigDict(frozen=True)

    endpoint_url: str
    api_key: str
    model: str
    narrative_prompt: str
    segment_prompt: str
    provider_requires_extra_headers: bool = False


def format_timestamp(seconds: float) -> str:
    """Render a second offset as ``[MM:SS]``.

    Args:
        seconds: Offset in seconds; fractions are truncated.

    Returns:
        The zero-padded ``[MM:SS]`` string.
    """
    total = max(0, int(seconds))
    minutes, secs = divmod(total, 60)
    return f"[{minutes:02d}:{secs:02d}]"
