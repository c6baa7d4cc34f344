"""Summarization facade: cache, preconditions, dedup, and error policy.

:class:`SummarizationService` is the single entry point callers use. It
checks the cache, validates the provider configuration, and routes the
work through the :class:`~video_digest.tasks.TaskCoordinator` so that a
video never has two summary generations in flight. Every failure path
leaves the coordinator and cache in a state where the next call starts
fresh.
"""

from __future__ import annotations

from collections.abc import Callable, Iterable, Mapping
from typing import TYPE_CHECKING, Any

import structlog

from video_digest.events import EventType
from video_digest.exceptions import (
    ConfigInvalidError,
    ConfigMissingError,
    TaskAlreadyCancelledError,
    VideoDigestError,
)
from video_digest.models import (
    SubtitleLine,
    SummaryRequestConfig,
    SummaryResult,
    TaskKind,
    TaskStatus,
    TranscriptBodies,
    VideoIdentity,
    format_timestamp,
)
from video_digest.streaming import ProgressCallback, notify_progress

if TYPE_CHECKING:
    from video_digest.cache import SummaryCache
    from video_digest.events import EventBus
    from video_digest.orchestrator import RequestOrchestrator
    from video_digest.tasks import Task, TaskCoordinator, WorkFn

logger: structlog.stdlib.BoundLogger = structlog.get_logger(__name__)

ConfigProvider = Callable[[], SummaryRequestConfig | None]


def build_transcript_bodies(
    subtitle_lines: Iterable[SubtitleLine | Mapping[str, Any]],
) -> TranscriptBodies:
    """Render subtitles into the two request transcripts.

    Args:
        subtitle_lines: Lines as models or raw ``{content, from}`` dicts.

    Returns:
        A plain newline-joined transcript and a ``[MM:SS] content`` one.
    """
    lines = [
        line if isinstance(line, SubtitleLine) else SubtitleLine.model_validate(line)
        for line in subtitle_lines
    ]
    return TranscriptBodies(
        plain="\n".join(line.content for line in lines),
        timestamped="\n".join(
            f"{format_timestamp(line.start_seconds)} {line.content}" for line in lines
        ),
    )


def validate_request_config(
    config: SummaryRequestConfig | None,
) -> SummaryRequestConfig:
    """Check that a provider configuration can issue requests.

    Raises:
        ConfigMissingError: If no configuration is selected.
        ConfigInvalidError: If the key, URL or model is unusable.
    """
    if config is None:
        raise ConfigMissingError(
            "No AI provider is configured. Add one in the settings first."
        )
    if not config.api_key.strip():
        raise ConfigInvalidError(
            "The AI API key is not set for the selected provider.", field="api_key"
        )
    if not config.endpoint_url.startswith("http"):
        raise ConfigInvalidError(
            f"The API URL must start with http or https, got {config.endpoint_url!r}.",
            field="endpoint_url",
        )
    if not config.model.strip():
        raise ConfigInvalidError(
            "No model is selected for the AI provider.", field="model"
        )
    return config


class SummarizationService:
    """Produce, deduplicate and cache AI summaries of video transcripts.

    Args:
        config_provider: Returns the provider configuration to use, or
            ``None`` when nothing is configured. Called once per summarize.
        cache: Summary store keyed by video identity.
        coordinator: Task arena enforcing one live summary per video.
        orchestrator: Issues the upstream requests.
        events: Optional bus receiving progress events.
    """

    def __init__(
        self,
        config_provider: ConfigProvider,
        cache: SummaryCache,
        coordinator: TaskCoordinator,
        orchestrator: RequestOrchestrator,
        events: EventBus | None = None,
    ) -> None:
        self._config_provider = config_provider
        self._cache = cache
        self._coordinator = coordinator
        self._orchestrator = orchestrator
        self._events = events

    async def summarize(
        self,
        identity: VideoIdentity,
        subtitle_lines: Iterable[SubtitleLine | Mapping[str, Any]],
        *,
        force_regenerate: bool = False,
        automatic: bool = False,
        on_progress: ProgressCallback | None = None,
    ) -> SummaryResult | None:
        """Summarize a video's subtitles, reusing cached or in-flight work.

        Args:
            identity: The video part being summarized.
            subtitle_lines: Transcript lines with start offsets.
            force_regenerate: Ignore and invalidate cached output.
            automatic: The run was not requested by a user; it is skipped
                for videos already processed automatically.
            on_progress: Receives the cumulative narrative while it
                streams, when this call starts the generation.

        Returns:
            The summary, or ``None`` when an automatic run is skipped and
            nothing is cached.

        Raises:
            ConfigMissingError: If no provider is configured.
            ConfigInvalidError: If the provider configuration is unusable.
            VideoDigestError: Any error raised by the generation, unchanged.
        """
        log = logger.bind(video_key=identity.key)

        if not force_regenerate:
            cached = self._cache.get_summary(identity)
            if cached is not None:
                log.info("summary_cache_used")
                return cached

        try:
            config = validate_request_config(self._config_provider())
        except VideoDigestError as exc:
            self._publish(identity, EventType.SUMMARY_FAILED, {"error": str(exc)})
            log.warning("summary_precondition_failed", error=str(exc))
            raise

        bodies = build_transcript_bodies(subtitle_lines)

        if force_regenerate:
            self._reset_for_regeneration(identity)

        task = self._coordinator.get_live_task(identity, TaskKind.AI_SUMMARY)
        if task is not None and task.status.is_terminal:
            if task.status is TaskStatus.COMPLETED and task.result is not None:
                log.info("summary_task_reused", task_id=task.id)
                return task.result
            self._coordinator.release(task.id)
            task = None

        created = False
        if task is None:
            if automatic and self._coordinator.is_processed(identity):
                log.info("summary_skipped_processed")
                return self._cache.get_summary(identity)

            task = self._coordinator.create_task(
                TaskKind.AI_SUMMARY,
                identity,
                self._make_work(identity, bodies, config, on_progress),
                is_manual=not automatic,
            )
            if task is None:
                return self._cache.get_summary(identity)
            created = True
        else:
            log.info("summary_task_attached", task_id=task.id)

        return await self._await_task(task, created=created)

    def cancel(self, identity: VideoIdentity) -> int:
        """Abort in-flight summary work for a video.

        Returns:
            Number of tasks signalled.
        """
        return self._coordinator.cancel_video_tasks(identity)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _reset_for_regeneration(self, identity: VideoIdentity) -> None:
        self._coordinator.clear_processed_mark(identity)
        self._cache.invalidate(identity)
        existing = self._coordinator.get_live_task(identity, TaskKind.AI_SUMMARY)
        if existing is not None and existing.status.is_terminal:
            self._coordinator.release(existing.id)
        logger.debug("summary_state_reset", video_key=identity.key)

    def _make_work(
        self,
        identity: VideoIdentity,
        bodies: TranscriptBodies,
        config: SummaryRequestConfig,
        on_progress: ProgressCallback | None,
    ) -> WorkFn:
        async def progress(text: str) -> None:
            self._publish(identity, EventType.SUMMARY_CHUNK, {"text": text})
            await notify_progress(on_progress, text)

        async def work(task: Task) -> SummaryResult:
            self._publish(identity, EventType.SUMMARY_STARTED, {"task_id": task.id})
            try:
                result = await self._orchestrator.run(
                    bodies, config, task.cancel_token, progress
                )
            except BaseException as exc:
                self._publish(
                    identity,
                    EventType.SUMMARY_FAILED,
                    {"task_id": task.id, "error": str(exc) or type(exc).__name__},
                )
                raise

            if not isinstance(result, SummaryResult):
                # Settles the task with neither result nor error.
                logger.warning(
                    "summary_result_missing",
                    video_key=identity.key,
                    task_id=task.id,
                    got=type(result).__name__,
                )
                return result

            self._cache.set_summary(identity, result)
            self._publish(
                identity,
                EventType.SUMMARY_COMPLETED,
                {
                    "task_id": task.id,
                    "segments": len(result.segments),
                    "ads": len(result.ads),
                },
            )
            return result

        return work

    async def _await_task(self, task: Task, *, created: bool) -> SummaryResult:
        try:
            await task.wait()
        finally:
            if created:
                if task.status.is_terminal:
                    self._coordinator.release(task.id)
                else:
                    # The creating caller went away; release once the work ends.
                    task.done.add_done_callback(
                        lambda _: self._coordinator.release(task.id)
                    )

        if task.status is TaskStatus.COMPLETED and task.result is not None:
            return task.result

        if task.error is not None:
            logger.warning(
                "summary_failed",
                video_key=task.identity.key,
                task_id=task.id,
                status=task.status.value,
                error=str(task.error),
            )
            raise task.error

        raise TaskAlreadyCancelledError(
            f"Summary task {task.id} ended without a result"
        )

    def _publish(
        self,
        identity: VideoIdentity,
        event_type: EventType,
        payload: dict[str, Any],
    ) -> None:
        if self._events is not None:
            self._events.publish(identity.key, event_type, payload)
