"""
Title Merge Task.

Scheduled job that regenerates merged titles:
- Finds every title_key touched since the last merge
- Rebuilds each from the full set of contributing provider entries
- Writes the Title and its TitleStreams, then deletes stale streams

Keys are processed one at a time; a failure on one key keeps its
previous state and is reported in the result.
"""
import logging
from typing import Callable

from cancellation import CancellationToken
from catalog import MEDIA_TYPES, MOVIES, TVSHOWS, Contribution, Provider, ProviderTitle
from errors import CancellationError, DocStoreError, NetworkError, UpstreamFormatError
from repositories import (
    JobHistoryRepository,
    ProviderRepository,
    ProviderTitleRepository,
    TitleRepository,
    TitleStreamRepository,
)
from task_scheduler import JobRun, TaskResult, TaskScheduler
from tmdb_handler import TmdbHandler

logger = logging.getLogger(__name__)

# Outcomes of merging one key
MERGED = "merged"
UNCHANGED = "unchanged"
REMOVED = "removed"

TmdbFactory = Callable[[CancellationToken], TmdbHandler]


def split_title_key(key: str) -> tuple[str, int]:
    """Split a title key: "movies-438631" -> ("movies", 438631)."""
    media_type, _, tmdb_id = key.partition("-")
    if media_type not in MEDIA_TYPES or not tmdb_id.isdigit():
        raise ValueError(f"Invalid title key: {key!r}")
    return media_type, int(tmdb_id)


class TitleMergeTask(TaskScheduler):
    """
    Rebuild merged Titles and TitleStreams from ProviderTitles.

    Affected keys are the keys of entries changed since the watermark, every
    key contributed to by a provider whose configuration was saved since the
    watermark, and every key that still has streams from a disabled or
    deleted provider.
    """

    task_id = "merge_titles"
    task_name = "Title Merge"
    task_description = "Regenerate merged titles and their per-provider streams"

    def __init__(
        self,
        history_repo: JobHistoryRepository,
        provider_repo: ProviderRepository,
        provider_title_repo: ProviderTitleRepository,
        title_repo: TitleRepository,
        stream_repo: TitleStreamRepository,
        tmdb_factory: TmdbFactory,
    ):
        super().__init__(history_repo)
        self.provider_repo = provider_repo
        self.provider_title_repo = provider_title_repo
        self.title_repo = title_repo
        self.stream_repo = stream_repo
        self.tmdb_factory = tmdb_factory

    def affected_keys(self, run: JobRun, active_ids: list[str]) -> set[str]:
        changed = self.provider_title_repo.find_changed_since(run.watermark, active_ids)
        keys = {title.title_key for title in changed if title.title_key}

        # Re-enabled or re-prioritised providers change titles whose entries did not move
        reconfigured = []
        if run.watermark is not None:
            reconfigured = [provider.id for provider in self.provider_repo.list_changed_since(run.watermark)]
        if reconfigured:
            logger.info(f"[{self.task_id}] Provider configuration changed: {', '.join(reconfigured)}")
            keys |= self.provider_title_repo.title_keys_for_providers(reconfigured)

        inactive_ids = self.provider_repo.list_inactive_ids()
        demoted = self.stream_repo.title_keys_for_providers(inactive_ids)
        if demoted:
            logger.info(f"[{self.task_id}] {len(demoted)} title(s) still reference disabled or deleted providers")
        return keys | demoted

    async def execute(self, run: JobRun) -> TaskResult:
        """Execute the merge job."""
        providers = {provider.id: provider for provider in self.provider_repo.list_active()}
        active_ids = sorted(providers)
        keys = sorted(self.affected_keys(run, active_ids))

        processed = {MOVIES: 0, TVSHOWS: 0}
        removed = 0
        errors: list[str] = []
        self._set_progress(total=len(keys), current=0, status="merging")
        logger.info(f"[{self.task_id}] {len(keys)} affected title(s)")

        tmdb = self.tmdb_factory(run.cancel_token)
        try:
            for key in keys:
                if run.cancelled:
                    break
                self._set_progress(current_item=key)
                try:
                    outcome = await self._merge_key(key, providers, tmdb, errors)
                except CancellationError:
                    break
                except (NetworkError, UpstreamFormatError, DocStoreError, ValueError) as e:
                    logger.warning(f"[{self.task_id}] {key}: kept previous state: {e}")
                    errors.append(f"{key}: {e}")
                    self._increment_progress(current=1, failed_count=1)
                    continue

                self._increment_progress(current=1, success_count=1)
                if outcome == REMOVED:
                    removed += 1
                else:
                    processed[split_title_key(key)[0]] += 1
        finally:
            tmdb.reset_job_cache()

        details = {
            "movies_processed": processed[MOVIES],
            "tvshows_processed": processed[TVSHOWS],
            "titles_removed": removed,
            "errors": errors,
        }
        if run.cancelled:
            return TaskResult(success=False, message="Merge cancelled", details=details)
        return TaskResult(
            success=True,
            message=(
                f"Merged {processed[MOVIES]} movie(s) and {processed[TVSHOWS]} show(s), "
                f"removed {removed}, {len(errors)} error(s)"
            ),
            details=details,
        )

    # -------------------------------------------------------------------------
    # One key
    # -------------------------------------------------------------------------

    @staticmethod
    def contributions_for(contributors: list[ProviderTitle], providers: dict[str, Provider]) -> list[Contribution]:
        contributions = []
        for entry in contributors:
            provider = providers[entry.provider_id]
            for stream_id, path in sorted(entry.streams.items()):
                if not path:
                    continue
                contributions.append(Contribution(entry.provider_id, stream_id, provider.stream_url(path)))
        return contributions

    def _remove(self, key: str) -> str:
        streams = self.stream_repo.delete_for_title(key)
        titles = self.title_repo.delete(key)
        logger.info(f"[{self.task_id}] {key}: no contributors left, removed title ({titles}) and {streams} stream(s)")
        return REMOVED

    async def _merge_key(
        self,
        key: str,
        providers: dict[str, Provider],
        tmdb: TmdbHandler,
        errors: list[str],
    ) -> str:
        media_type, tmdb_id = split_title_key(key)
        contributors = self.provider_title_repo.find_contributors(key, list(providers))
        if not contributors:
            return self._remove(key)

        contributors.sort(key=lambda entry: (providers[entry.provider_id].priority, entry.provider_id))
        priorities = {provider_id: provider.priority for provider_id, provider in providers.items()}
        build = await tmdb.build_title(
            tmdb_id,
            media_type,
            self.contributions_for(contributors, providers),
            priorities,
            fallback_name=contributors[0].name,
        )
        if not build.streams:
            # Nothing playable (e.g. a show without episode streams)
            return self._remove(key)
        if build.error:
            errors.append(f"{key}: {build.error}")

        changed = self.title_repo.save(build.title)
        result = self.stream_repo.bulk_save(build.streams)
        if result.errors:
            raise DocStoreError(f"{len(result.errors)} stream(s) not saved", item_errors=result.errors)

        # Deletions only after the new set is in place
        keep = {stream.key for stream in build.streams}
        stale = [stream for stream in self.stream_repo.find_by_title(key) if stream.key not in keep]
        deleted = 0
        if stale:
            deleted = self.stream_repo.delete_keys([stream.key for stream in stale])
            logger.debug(f"[{self.task_id}] Removed stale stream(s): {', '.join(s.compound_key for s in stale)}")

        if changed or result.written or deleted:
            logger.debug(
                f"[{self.task_id}] {key}: {len(build.streams)} stream(s), "
                f"{result.written} written, {deleted} removed"
            )
            return MERGED
        return UNCHANGED
