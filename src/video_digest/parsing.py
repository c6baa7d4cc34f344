"""Resilient parsing of LLM output into structured summary data.

Everything in this module is pure and total: malformed model output
degrades to an empty result and a warning log, never an exception. The
caller decides how severe an empty result is.

JSON recovery is a small ordered pipeline of transforms, composed with
"stop at first success":

1. ``extract_fenced_block``  - unwrap a fenced code block if present.
2. ``candidate_spans``       - the text itself, then the outermost
   ``[...]`` or ``{...}`` span (tolerates prose around the JSON).
3. ``repair_json_text``      - fix ``}{`` and trailing commas.
4. ``load_json_candidate``   - parse repaired text, then the raw span.
5. ``classify_payload``      - tag the decoded value with its shape.
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from typing import Any

import structlog

from video_digest.models import AdSegment, Segment, format_timestamp

logger: structlog.stdlib.BoundLogger = structlog.get_logger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

DEFAULT_AD_DURATION_SECONDS = 30
"""Assumed length of an ad when only its start time is known."""

AD_TITLES = frozenset({"广告", "advertisement", "ad", "sponsor"})
_DEFAULT_AD_PRODUCT = "广告"
_AD_PRODUCT_MAX_CHARS = 20
_PREVIEW_CHARS = 200

_JSON_FENCE_RE = re.compile(r"```json\s*([\s\S]*?)```")
_ANY_FENCE_RE = re.compile(r"```\s*([\s\S]*?)```")
_WHOLE_FENCE_RE = re.compile(r"^```([^\n`]*)\n([\s\S]*?)\n?```$")
_LANG_TAG_RE = re.compile(r"^[\w.+-]{1,19}$")
_MARKDOWN_FENCE_RE = re.compile(r"```markdown\s*([\s\S]*?)```")
_FENCED_HEADING_RE = re.compile(r"```\s*\n?(#{1,3}\s+[\s\S]*?)```")
_MAX_UNWRAP_PASSES = 10

_MISSING_COMMA_RE = re.compile(r"\}\s*\{")
_TRAILING_COMMA_ARRAY_RE = re.compile(r",\s*\]")
_TRAILING_COMMA_OBJECT_RE = re.compile(r",\s*\}")

_CLOCK_PART_RE = re.compile(r"^\d+$")
_CLOCK_SECONDS_RE = re.compile(r"^\d+(?:\.\d+)?$")


# ---------------------------------------------------------------------------
# Narrative cleanup
# ---------------------------------------------------------------------------


def _unwrap_whole_fence(text: str) -> str:
    """Strip a single fence that wraps the entire text.

    A short single-token info string after the opening fence (``markdown``,
    ``md``, ``text``) is treated as a language tag and dropped.
    """
    if text.count("```") != 2:
        return text
    match = _WHOLE_FENCE_RE.match(text)
    if match is None:
        return text
    info, body = match.group(1).strip(), match.group(2)
    if info and not _LANG_TAG_RE.match(info):
        body = f"{info}\n{body}"
    return body.strip()


def clean_narrative(raw: str | None) -> str:
    """Remove code-fence wrapping that models add around markdown.

    Order matters: whole-response wrap first, then repeated unwrapping of
    ``markdown``-tagged fences, then headings that were fenced by mistake.

    Args:
        raw: Raw narrative text as streamed from the model.

    Returns:
        The cleaned markdown, or ``""`` for empty input.
    """
    if not raw:
        return ""

    text = _unwrap_whole_fence(raw.strip())

    for _ in range(_MAX_UNWRAP_PASSES):
        if "```markdown" not in text:
            break
        match = _MARKDOWN_FENCE_RE.search(text)
        if match is None:
            break
        text = text[: match.start()] + match.group(1).strip() + text[match.end() :]

    text = _FENCED_HEADING_RE.sub(r"\1", text)
    return text.strip()


# ---------------------------------------------------------------------------
# Timestamp normalization
# ---------------------------------------------------------------------------


def _split_clock(value: str) -> tuple[int, ...] | None:
    """Split ``MM:SS`` / ``HH:MM:SS`` (optionally bracketed) into integers."""
    cleaned = value.strip().strip("[]").strip()
    if not cleaned:
        return None
    parts = [part.strip() for part in cleaned.split(":")]
    if len(parts) not in (2, 3):
        return None
    *leading, last = parts
    if not all(_CLOCK_PART_RE.match(part) for part in leading):
        return None
    if not _CLOCK_SECONDS_RE.match(last):
        return None
    return (*(int(part) for part in leading), int(float(last)))


def normalize_timestamp(value: Any) -> str:
    """Normalize a model-supplied timestamp to ``[MM:SS]``.

    ``HH:MM:SS`` is folded into total minutes, so ``01:02:03`` becomes
    ``[62:03]``. Numbers are read as seconds. Anything unreadable becomes
    ``[00:00]``.

    Args:
        value: Timestamp as found in the decoded JSON.

    Returns:
        The zero-padded ``[MM:SS]`` string.
    """
    if isinstance(value, bool) or value is None:
        return "[00:00]"
    if isinstance(value, int | float):
        return format_timestamp(value)
    if not isinstance(value, str):
        return "[00:00]"

    parts = _split_clock(value)
    if parts is None:
        return "[00:00]"
    if len(parts) == 2:
        minutes, seconds = parts
    else:
        hours, mins, seconds = parts
        minutes = hours * 60 + mins
    return f"[{minutes:02d}:{seconds:02d}]"


def parse_time_to_seconds(value: Any) -> int:
    """Convert ``MM:SS`` / ``HH:MM:SS`` (or a number of seconds) to seconds.

    Args:
        value: Timestamp as found in the decoded JSON.

    Returns:
        Total seconds, or ``0`` for anything unreadable.
    """
    if isinstance(value, bool) or value is None:
        return 0
    if isinstance(value, int | float):
        return max(0, int(value))
    if not isinstance(value, str):
        return 0

    parts = _split_clock(value)
    if parts is None:
        return 0
    if len(parts) == 2:
        minutes, seconds = parts
        return minutes * 60 + seconds
    hours, minutes, seconds = parts
    return hours * 3600 + minutes * 60 + seconds


# ---------------------------------------------------------------------------
# JSON recovery pipeline
# ---------------------------------------------------------------------------


def extract_fenced_block(text: str) -> str:
    """Return the inner text of a ```` ```json ```` fence, else any fence.

    Args:
        text: Raw model output.

    Returns:
        The fence body, or ``text`` unchanged when there is no fence.
    """
    if "```json" in text:
        match = _JSON_FENCE_RE.search(text)
        if match:
            return match.group(1).strip()
    if "```" in text:
        match = _ANY_FENCE_RE.search(text)
        if match:
            return match.group(1).strip()
    return text


def extract_braced_span(text: str, opener: str = "{", closer: str = "}") -> str | None:
    """Return the substring from the first ``opener`` to the last ``closer``."""
    start = text.find(opener)
    end = text.rfind(closer)
    if start == -1 or end < start:
        return None
    return text[start : end + 1]


def candidate_spans(text: str) -> list[str]:
    """List the JSON candidates to try, most literal first.

    The text itself comes first. A top-level array span is only tried
    when ``[`` precedes the first ``{``.
    """
    spans: list[str] = [text]
    first_brace = text.find("{")
    first_bracket = text.find("[")
    if first_bracket != -1 and (first_brace == -1 or first_bracket < first_brace):
        array_span = extract_braced_span(text, "[", "]")
        if array_span:
            spans.append(array_span)
    object_span = extract_braced_span(text)
    if object_span:
        spans.append(object_span)

    unique: list[str] = []
    for span in spans:
        if span not in unique:
            unique.append(span)
    return unique


def repair_json_text(text: str) -> str:
    """Apply textual repairs for the two most common model mistakes.

    Inserts the comma missing between adjacent objects (``}{``) and drops
    trailing commas before ``]`` or ``}``.
    """
    repaired = _MISSING_COMMA_RE.sub("},{", text)
    repaired = _TRAILING_COMMA_ARRAY_RE.sub("]", repaired)
    return _TRAILING_COMMA_OBJECT_RE.sub("}", repaired)


def load_json_candidate(span: str) -> Any | None:
    """Decode ``span`` after repair, falling back to the unrepaired text.

    The repairs can corrupt JSON that was already valid (for example a
    ``"}{"`` inside a string), hence the second attempt.

    Returns:
        The decoded value, or ``None`` if neither attempt parses.
    """
    try:
        return json.loads(repair_json_text(span))
    except json.JSONDecodeError:
        pass
    try:
        return json.loads(span)
    except json.JSONDecodeError:
        return None


# ---------------------------------------------------------------------------
# Payload shapes (tagged union at the parse boundary)
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class SegmentsPayload:
    """``{"segments": [...]}`` or a bare list of segments."""

    segments: list[dict[str, Any]]


@dataclass(frozen=True)
class RichAdsPayload:
    """``{"segments": [...], "ads": [{start, end, product, description}]}``."""

    segments: list[dict[str, Any]]
    ads: list[dict[str, Any]]


@dataclass(frozen=True)
class LegacyAdsPayload:
    """``{"hasAds": true, "segments": [{start, end, product, description}]}``."""

    ads: list[dict[str, Any]]


Payload = SegmentsPayload | RichAdsPayload | LegacyAdsPayload


def _dict_items(value: Any) -> list[dict[str, Any]]:
    return [item for item in value if isinstance(item, dict)]


def classify_payload(data: Any) -> Payload | None:
    """Tag a decoded JSON value with its shape.

    Explicit ``ads`` wins over the legacy ``hasAds`` shape.

    Returns:
        The tagged payload, or ``None`` if no known shape matches.
    """
    if isinstance(data, list):
        return SegmentsPayload(segments=_dict_items(data))
    if not isinstance(data, dict):
        return None

    segments = data.get("segments")
    ads = data.get("ads")
    if isinstance(ads, list):
        return RichAdsPayload(
            segments=_dict_items(segments) if isinstance(segments, list) else [],
            ads=_dict_items(ads),
        )
    if data.get("hasAds") is True and isinstance(segments, list):
        return LegacyAdsPayload(ads=_dict_items(segments))
    if isinstance(segments, list):
        return SegmentsPayload(segments=_dict_items(segments))
    return None


def load_payload(raw: str | None) -> Payload | None:
    """Run the full recovery pipeline over raw model output.

    Returns:
        The first candidate that decodes into a known shape, else ``None``.
    """
    if not raw or not raw.strip():
        logger.warning("segment_response_empty")
        return None

    candidate = extract_fenced_block(raw.strip())
    for span in candidate_spans(candidate):
        data = load_json_candidate(span)
        if data is None:
            continue
        payload = classify_payload(data)
        if payload is not None:
            return payload

    logger.warning(
        "segment_response_unparseable",
        length=len(raw),
        preview=raw[:_PREVIEW_CHARS],
    )
    return None


# ---------------------------------------------------------------------------
# Conversion to domain models
# ---------------------------------------------------------------------------


def _text(value: Any) -> str:
    if value is None:
        return ""
    return value if isinstance(value, str) else str(value)


def _to_segment(item: dict[str, Any]) -> Segment:
    return Segment(
        timestamp_seconds=parse_time_to_seconds(item.get("timestamp")),
        title=_text(item.get("title")).strip(),
        summary=_text(item.get("summary")).strip(),
    )


def _to_ad(item: dict[str, Any], ad_duration: int) -> AdSegment:
    start = parse_time_to_seconds(item.get("start"))
    end = parse_time_to_seconds(item.get("end"))
    if end <= start:
        end = start + ad_duration
    return AdSegment(
        start_seconds=start,
        end_seconds=end,
        product=_text(item.get("product")).strip(),
        description=_text(item.get("description")).strip(),
    )


@dataclass
class ParsedSegments:
    """Segments and explicitly described ads from one model response."""

    segments: list[Segment] = field(default_factory=list)
    ads: list[AdSegment] = field(default_factory=list)


def parse_segments(raw: str | None) -> list[Segment]:
    """Parse a segment-list response.

    Args:
        raw: Raw model output, possibly fenced or wrapped in prose.

    Returns:
        Parsed segments in response order, or ``[]`` if nothing usable
        was found.
    """
    payload = load_payload(raw)
    match payload:
        case SegmentsPayload(segments=items) | RichAdsPayload(segments=items):
            segments = [_to_segment(item) for item in items]
        case _:
            segments = []

    logger.debug("segments_parsed", count=len(segments))
    return segments


def parse_segments_and_ads(
    raw: str | None,
    ad_duration: int = DEFAULT_AD_DURATION_SECONDS,
) -> ParsedSegments:
    """Parse a response that may also describe ads with explicit spans.

    Both the ``ads`` array and the legacy ``hasAds`` + ``segments`` shape
    are normalized into :class:`AdSegment`. In the legacy shape the
    ``segments`` array lists ads, so no narrative segments are returned.

    Args:
        raw: Raw model output.
        ad_duration: Length assumed for an ad whose end is missing or not
            after its start.

    Returns:
        Parsed segments and ads; both empty if nothing usable was found.
    """
    payload = load_payload(raw)
    match payload:
        case RichAdsPayload(segments=segment_items, ads=ad_items):
            result = ParsedSegments(
                segments=[_to_segment(item) for item in segment_items],
                ads=[_to_ad(item, ad_duration) for item in ad_items],
            )
        case LegacyAdsPayload(ads=ad_items):
            result = ParsedSegments(ads=[_to_ad(item, ad_duration) for item in ad_items])
        case SegmentsPayload(segments=segment_items):
            result = ParsedSegments(
                segments=[_to_segment(item) for item in segment_items]
            )
        case _:
            result = ParsedSegments()

    if not result.segments:
        logger.warning("segments_empty", ads=len(result.ads))
    logger.debug(
        "segments_and_ads_parsed",
        segments=len(result.segments),
        ads=len(result.ads),
    )
    return result


# ---------------------------------------------------------------------------
# Advertisement reclassification
# ---------------------------------------------------------------------------


def is_advertisement_title(title: str) -> bool:
    """Return True if a segment title marks a promotional span."""
    return title.strip().lower() in AD_TITLES


def split_advertisements(
    segments: list[Segment],
    ad_duration: int = DEFAULT_AD_DURATION_SECONDS,
) -> tuple[list[Segment], list[AdSegment]]:
    """Move advertisement-titled segments into :class:`AdSegment` form.

    The model gives no reliable end time for these, so each ad spans
    ``ad_duration`` seconds from its timestamp.

    Args:
        segments: Segments as parsed from the model response.
        ad_duration: Assumed ad length in seconds.

    Returns:
        ``(remaining_segments, ads)``, both in input order.
    """
    remaining: list[Segment] = []
    ads: list[AdSegment] = []
    for segment in segments:
        if not is_advertisement_title(segment.title):
            remaining.append(segment)
            continue
        ads.append(
            AdSegment(
                start_seconds=segment.timestamp_seconds,
                end_seconds=segment.timestamp_seconds + ad_duration,
                product=segment.summary[:_AD_PRODUCT_MAX_CHARS] or _DEFAULT_AD_PRODUCT,
                description=segment.summary,
            )
        )
        logger.debug(
            "ad_segment_detected",
            timestamp=segment.timestamp,
            summary=segment.summary,
        )
    return remaining, ads
