"""Concurrent narrative and segment requests against a chat-completion API.

One summarize run issues two independent calls to the same
OpenAI-compatible endpoint:

* the **narrative** call, streamed as SSE and bounded by
  ``summary.narrative_timeout``;
* the **segment** call, a single JSON response listing timestamped
  highlights and advertisement markers.

Both calls race a watcher on the task's cancel token. The first error
from any of the three wins and the others are cancelled, which aborts
whatever HTTP transfer is still in flight. Nothing is retried.
"""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING, Any

import httpx
import structlog

from video_digest.config import HTTPSettings, SummarySettings
from video_digest.exceptions import (
    IncompleteSummaryError,
    NarrativeTimeoutError,
    TaskAbortedError,
    UpstreamConnectionError,
    UpstreamHTTPError,
)
from video_digest.models import SummaryResult
from video_digest.parsing import (
    clean_narrative,
    parse_segments_and_ads,
    split_advertisements,
)
from video_digest.streaming import ProgressCallback, aggregate_response

if TYPE_CHECKING:
    from types import TracebackType

    from video_digest.models import SummaryRequestConfig, TranscriptBodies
    from video_digest.tasks import CancelToken

logger: structlog.stdlib.BoundLogger = structlog.get_logger(__name__)

_BODY_SNIPPET_CHARS = 200
_CHAT_COMPLETIONS_SUFFIX = "/chat/completions"


# ---------------------------------------------------------------------------
# Request construction
# ---------------------------------------------------------------------------


def build_headers(
    config: SummaryRequestConfig,
    http_settings: HTTPSettings | None = None,
) -> dict[str, str]:
    """Build the headers shared by both chat-completion calls."""
    headers = {
        "Content-Type": "application/json",
        "Authorization": f"Bearer {config.api_key}",
    }
    if config.provider_requires_extra_headers:
        http_settings = http_settings or HTTPSettings()
        headers["HTTP-Referer"] = http_settings.referer
        headers["X-Title"] = http_settings.app_title
    return headers


def build_request_body(
    config: SummaryRequestConfig,
    prompt: str,
    transcript: str,
    *,
    stream: bool,
) -> dict[str, Any]:
    """Build a single-message chat-completion body.

    The transcript is appended to the prompt verbatim.
    """
    return {
        "model": config.model,
        "messages": [{"role": "user", "content": prompt + transcript}],
        "stream": stream,
    }


def _http_error(response: httpx.Response, body: str) -> UpstreamHTTPError:
    snippet = body[:_BODY_SNIPPET_CHARS]
    reason = response.reason_phrase or "Error"
    message = f"API request failed: HTTP {response.status_code} {reason}"
    if snippet:
        message = f"{message}: {snippet}"
    return UpstreamHTTPError(message, status=response.status_code, body=snippet)


def models_url(endpoint_url: str) -> str:
    """Derive the provider's ``/models`` URL from its chat-completions URL.

    An endpoint without the ``/chat/completions`` suffix is treated as the
    API base, and ``/models`` is appended to it.
    """
    base = endpoint_url.strip().rstrip("/")
    if base.endswith(_CHAT_COMPLETIONS_SUFFIX):
        return base[: -len(_CHAT_COMPLETIONS_SUFFIX)] + "/models"
    logger.warning("models_url_from_base", endpoint_url=endpoint_url)
    return base + "/models"


def _message_content(data: Any) -> str:
    """Pull ``choices[0].message.content`` out of a completion body."""
    try:
        content = data["choices"][0]["message"]["content"]
    except (KeyError, IndexError, TypeError):
        return ""
    return content if isinstance(content, str) else ""


# ---------------------------------------------------------------------------
# Orchestrator
# ---------------------------------------------------------------------------


class RequestOrchestrator:
    """Run both upstream calls for one summary and merge their output.

    Args:
        client: Shared HTTP client. When omitted the orchestrator creates
            one and closes it in :meth:`aclose`.
        summary_settings: Timeouts and the assumed ad duration.
        http_settings: Attribution headers for providers that need them.
    """

    def __init__(
        self,
        client: httpx.AsyncClient | None = None,
        summary_settings: SummarySettings | None = None,
        http_settings: HTTPSettings | None = None,
    ) -> None:
        self._summary = summary_settings or SummarySettings()
        self._http = http_settings or HTTPSettings()
        self._timeout = httpx.Timeout(
            self._summary.request_timeout,
            connect=self._summary.connect_timeout,
        )
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=self._timeout)

    async def __aenter__(self) -> RequestOrchestrator:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    # ------------------------------------------------------------------
    # Summary run
    # ------------------------------------------------------------------

    async def run(
        self,
        bodies: TranscriptBodies,
        config: SummaryRequestConfig,
        cancel_token: CancelToken,
        on_progress: ProgressCallback | None = None,
    ) -> SummaryResult:
        """Issue both requests concurrently and build the summary.

        Args:
            bodies: Plain and timestamped transcripts.
            config: Provider settings for this invocation.
            cancel_token: Tripping it aborts both requests.
            on_progress: Receives the cumulative narrative text while it
                streams.

        Returns:
            The merged summary, with ads split out of the segment list.

        Raises:
            TaskAbortedError: If the cancel token is tripped.
            NarrativeTimeoutError: If the narrative stream exceeds its budget.
            UpstreamHTTPError: If either call gets a non-2xx response.
            UpstreamConnectionError: If the endpoint cannot be reached.
            IncompleteSummaryError: If the narrative is empty after cleanup.
        """
        if cancel_token.is_cancelled:
            raise TaskAbortedError("Summary task was cancelled before it started")

        headers = build_headers(config, self._http)
        narrative = asyncio.create_task(
            self._fetch_narrative(bodies, config, headers, on_progress)
        )
        segments = asyncio.create_task(self._fetch_segments(bodies, config, headers))
        watcher = asyncio.create_task(self._watch_cancel(cancel_token))

        logger.info("requests_dispatched", model=config.model)
        try:
            pending: set[asyncio.Task[Any]] = {narrative, segments, watcher}
            while not (narrative.done() and segments.done()):
                done, pending = await asyncio.wait(
                    pending, return_when=asyncio.FIRST_COMPLETED
                )
                for finished in done:
                    error = finished.exception()
                    if error is not None:
                        raise error
        finally:
            for child in (narrative, segments, watcher):
                if not child.done():
                    child.cancel()
            await asyncio.gather(narrative, segments, watcher, return_exceptions=True)

        return self._build_result(narrative.result(), segments.result())

    def _build_result(self, narrative_raw: str, segments_raw: str) -> SummaryResult:
        narrative = clean_narrative(narrative_raw)
        if not narrative:
            raise IncompleteSummaryError("AI summary is empty: no narrative was returned")

        ad_duration = self._summary.ad_duration_seconds
        parsed = parse_segments_and_ads(segments_raw, ad_duration)
        remaining, title_ads = split_advertisements(parsed.segments, ad_duration)
        ads = parsed.ads or title_ads

        if not remaining:
            logger.warning("segments_missing", ads=len(ads))

        result = SummaryResult(
            narrative_markdown=narrative,
            segments=sorted(remaining, key=lambda s: s.timestamp_seconds),
            ads=sorted(ads, key=lambda a: a.start_seconds),
        )
        logger.info(
            "summary_built",
            narrative_chars=len(narrative),
            segments=len(result.segments),
            ads=len(result.ads),
        )
        return result

    async def _watch_cancel(self, cancel_token: CancelToken) -> None:
        await cancel_token.wait()
        logger.info("requests_aborted", reason=cancel_token.reason)
        raise TaskAbortedError("Summary task was cancelled")

    async def _fetch_narrative(
        self,
        bodies: TranscriptBodies,
        config: SummaryRequestConfig,
        headers: dict[str, str],
        on_progress: ProgressCallback | None,
    ) -> str:
        body = build_request_body(
            config, config.narrative_prompt, bodies.plain, stream=True
        )
        request = self._client.build_request(
            "POST",
            config.endpoint_url,
            headers=headers,
            json=body,
            timeout=self._timeout,
        )
        budget = self._summary.narrative_timeout
        try:
            async with asyncio.timeout(budget):
                response = await self._client.send(request, stream=True)
                if response.is_error:
                    try:
                        await response.aread()
                    finally:
                        await response.aclose()
                    raise _http_error(response, response.text)
                return await aggregate_response(response, on_progress)
        except (TimeoutError, httpx.TimeoutException) as exc:
            logger.warning("narrative_timeout", timeout_seconds=budget)
            msg = f"Narrative summary timed out after {budget:g} seconds"
            raise NarrativeTimeoutError(msg) from exc
        except httpx.TransportError as exc:
            msg = f"Network error during narrative request: {exc}"
            raise UpstreamConnectionError(msg) from exc

    async def _fetch_segments(
        self,
        bodies: TranscriptBodies,
        config: SummaryRequestConfig,
        headers: dict[str, str],
    ) -> str:
        body = build_request_body(
            config, config.segment_prompt, bodies.timestamped, stream=False
        )
        try:
            response = await self._client.post(
                config.endpoint_url, headers=headers, json=body, timeout=self._timeout
            )
        except httpx.TransportError as exc:
            msg = f"Network error during segment request: {exc}"
            raise UpstreamConnectionError(msg) from exc

        if response.is_error:
            raise _http_error(response, response.text)

        try:
            data = response.json()
        except ValueError:
            logger.warning(
                "segment_body_not_json",
                preview=response.text[:_BODY_SNIPPET_CHARS],
            )
            return ""
        return _message_content(data)

    # ------------------------------------------------------------------
    # Model listing
    # ------------------------------------------------------------------

    async def list_models(self, config: SummaryRequestConfig) -> list[dict[str, Any]]:
        """List the models offered by the provider.

        The URL comes from :func:`models_url`. Entries given as bare
        strings are normalized to ``{"id": name}``; anything else that is
        not an object is dropped.

        Raises:
            UpstreamHTTPError: On a non-2xx response.
            UpstreamConnectionError: If the endpoint cannot be reached.
        """
        url = models_url(config.endpoint_url)
        try:
            response = await self._client.get(
                url,
                headers={"Authorization": f"Bearer {config.api_key}"},
                timeout=self._timeout,
            )
        except httpx.TransportError as exc:
            msg = f"Network error while listing models: {exc}"
            raise UpstreamConnectionError(msg) from exc

        if response.is_error:
            raise _http_error(response, response.text)

        try:
            data = response.json()
        except ValueError:
            logger.warning("models_body_not_json", url=url)
            return []
        entries = data.get("data") if isinstance(data, dict) else None
        if not isinstance(entries, list):
            return []

        models: list[dict[str, Any]] = []
        for entry in entries:
            if isinstance(entry, dict):
                models.append(entry)
            elif isinstance(entry, str):
                models.append({"id": entry})
        logger.debug(
            "models_listed", url=url, count=len(models), dropped=len(entries) - len(models)
        )
        return models
