"""
Paged, resumable download of the remote word corpus into the local store.

Steps of one run:
  1. Resume from the persisted offset (0 when starting fresh).
  2. Fetch a page of the most popular age-appropriate words, retrying
     transient failures with backoff.
  3. Write the page as one atomic batch, then persist the new offset and
     completed count before asking for the next page.
  4. A short page ends the run: the checkpoint becomes ``completed`` and the
     next run is due in 90 days.
"""
import asyncio
import datetime
from typing import Any, Awaitable, Callable, List, Optional

from loguru import logger

from .db import LocalStore
from .exceptions import PersistenceError, RemoteError, RemoteTimeoutError, SyncFailedError
from .remote import WordSource
from .scheduler import as_utc, days_until, is_sync_due, next_sync_due, utcnow
from .structured import DownloadStatus, SyncProgress, SyncState, SyncStatus, WordRecord

PAGE_SIZE = 50
SYNC_MAX_AGE = 12
MAX_ATTEMPTS = 3
BACKOFF_BASE_SECONDS = 1.0
BACKOFF_FACTOR = 3
PAGE_PAUSE_SECONDS = 0.2
CANCELLED_MESSAGE = "Sync cancelled by user"

META_STATUS = "sync_status"
META_LAST_COMPLETED = "last_full_sync_completed_at"
META_NEXT_DUE = "next_sync_due_at"
META_OFFSET = "sync_last_offset"
META_COMPLETED = "sync_words_completed"
META_TOTAL = "sync_words_total"
META_ERROR = "sync_error_message"
META_STARTED = "last_sync_started_at"
META_SCHEMA_VERSION = "db_schema_version"

STATUS_KEYS = (
    META_STATUS, META_LAST_COMPLETED, META_NEXT_DUE, META_OFFSET,
    META_COMPLETED, META_TOTAL, META_ERROR, META_STARTED,
)

ProgressCallback = Callable[[SyncProgress], None]


def _parse_time(value: Optional[str]) -> Optional[datetime.datetime]:
    if not value:
        return None
    try:
        return as_utc(datetime.datetime.fromisoformat(value))
    except ValueError:
        logger.warning("Ignoring unparseable sync timestamp {!r}", value)
        return None


def _parse_int(value: Optional[str]) -> int:
    try:
        return int(value) if value else 0
    except ValueError:
        return 0


def _percentage(completed: int, total: int) -> int:
    if total <= 0:
        return 0
    return min(100, round(completed * 100 / total))


class SyncOrchestrator:
    """Owns the sync checkpoint in the metadata table and drives page-by-page transfer."""

    def __init__(
        self,
        store: LocalStore,
        source: Optional[WordSource],
        clock: Optional[Callable[[], datetime.datetime]] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        timeout: float = 10.0,
        page_size: int = PAGE_SIZE,
        max_age: int = SYNC_MAX_AGE,
    ) -> None:
        self.store = store
        self.source = source
        self.clock = clock or utcnow
        self.sleep = sleep
        self.timeout = timeout
        self.page_size = page_size
        self.max_age = max_age
        self._running = False
        self._cancel_requested = False

    @property
    def is_running(self) -> bool:
        return self._running

    # ── Status ─────────────────────────────────────────────────

    def get_sync_status(self) -> SyncStatus:
        meta = self.store.get_meta_bulk(STATUS_KEYS)
        try:
            status = SyncState(meta.get(META_STATUS, SyncState.NEVER_SYNCED.value))
        except ValueError:
            status = SyncState.NEVER_SYNCED
        next_due = _parse_time(meta.get(META_NEXT_DUE))
        total = _parse_int(meta.get(META_TOTAL))
        completed = _parse_int(meta.get(META_COMPLETED))
        return SyncStatus(
            status=status,
            last_completed_at=_parse_time(meta.get(META_LAST_COMPLETED)),
            next_due_at=next_due,
            days_until_next_sync=days_until(next_due, self.clock()),
            words_total=total,
            words_completed=completed,
            percentage=_percentage(completed, total),
            error_message=meta.get(META_ERROR) or None,
        )

    def is_sync_needed(self) -> bool:
        status = self.get_sync_status()
        if status.status is SyncState.NEVER_SYNCED:
            return True
        return is_sync_due(status.next_due_at, self.clock())

    def get_days_until_next_sync(self) -> Optional[int]:
        return self.get_sync_status().days_until_next_sync

    def get_download_status(self) -> DownloadStatus:
        status = self.get_sync_status()
        downloaded = self.store.get_word_count()
        return DownloadStatus(
            is_downloaded=status.last_completed_at is not None,
            total_words=max(status.words_total, downloaded),
            downloaded_words=downloaded,
            version=self.store.get_meta(META_SCHEMA_VERSION),
            last_download_date=status.last_completed_at,
        )

    # ── Control ────────────────────────────────────────────────

    def cancel_sync(self) -> None:
        """Request cancellation; honoured before the next page is fetched."""
        if not self._running:
            logger.debug("cancel_sync called with no sync running")
            return
        logger.info("Sync cancellation requested")
        self._cancel_requested = True

    async def force_sync(self, on_progress: Optional[ProgressCallback] = None) -> SyncStatus:
        """Full re-fetch from offset 0, regardless of the 90-day clock."""
        if self._running:
            logger.warning("Sync already in progress; force_sync ignored")
            return self.get_sync_status()
        self.store.set_meta_bulk({
            META_OFFSET: "0",
            META_COMPLETED: "0",
            META_STATUS: SyncState.IDLE.value,
        })
        return await self.start_sync(on_progress)

    async def start_sync(self, on_progress: Optional[ProgressCallback] = None) -> SyncStatus:
        """
        Run (or resume) a sync to completion.

        Cancellation through cancel_sync leaves the checkpoint ``failed`` with a
        cancelled message and returns normally; cancelling the task itself records
        the same state and re-raises. Any other failure is persisted and raised
        as SyncFailedError.
        """
        if self.source is None:
            raise SyncFailedError("No remote word source configured")
        if self._running:
            logger.warning("Sync already in progress; start_sync ignored")
            return self.get_sync_status()

        self._running = True
        self._cancel_requested = False
        try:
            await self._run(on_progress)
        except (RemoteError, PersistenceError) as e:
            logger.error("Sync failed: {}", e)
            self._record_failure(str(e))
            raise SyncFailedError(str(e)) from e
        except asyncio.CancelledError:
            logger.warning("Sync task cancelled")
            self._record_failure(CANCELLED_MESSAGE)
            raise
        except Exception as e:
            logger.opt(exception=e).error("Sync aborted")
            message = str(e) or type(e).__name__
            self._record_failure(message)
            raise SyncFailedError(message) from e
        finally:
            self._running = False
        return self.get_sync_status()

    # ── Internals ──────────────────────────────────────────────

    async def _run(self, on_progress: Optional[ProgressCallback]) -> None:
        assert self.source is not None
        meta = self.store.get_meta_bulk([META_OFFSET, META_COMPLETED])
        offset = _parse_int(meta.get(META_OFFSET))
        completed = _parse_int(meta.get(META_COMPLETED)) if offset else 0
        source = self.source

        self.store.set_meta_bulk({
            META_STATUS: SyncState.IN_PROGRESS.value,
            META_STARTED: self.clock().isoformat(),
            META_ERROR: "",
        })
        logger.info("Starting word sync from offset {}", offset)

        total = await self._with_retry(lambda: source.count_words(self.max_age), "count words")
        total = max(total, completed)
        self.store.set_meta(META_TOTAL, str(total))
        self._emit(on_progress, completed, total, True, None)

        while True:
            if self._cancel_requested:
                logger.info("Sync cancelled at offset {}", offset)
                self._record_failure(CANCELLED_MESSAGE)
                self._emit(on_progress, completed, total, False, None)
                return

            page: List[WordRecord] = await self._with_retry(
                lambda: source.fetch_page(offset, self.page_size, self.max_age),
                f"fetch page at offset {offset}",
            )
            if page:
                self.store.upsert_words(page)
            offset += len(page)
            completed += len(page)
            total = max(total, completed)
            # checkpoint before the next fetch so a crash loses at most one page
            self.store.set_meta_bulk({
                META_OFFSET: str(offset),
                META_COMPLETED: str(completed),
                META_TOTAL: str(total),
            })
            self._emit(on_progress, completed, total, True, page[-1].word if page else None)
            logger.debug("Synced {} words ({} this page)", completed, len(page))

            if len(page) < self.page_size:
                break
            await self.sleep(PAGE_PAUSE_SECONDS)

        now = self.clock()
        self.store.set_meta_bulk({
            META_STATUS: SyncState.COMPLETED.value,
            META_LAST_COMPLETED: now.isoformat(),
            META_NEXT_DUE: next_sync_due(now).isoformat(),
            META_OFFSET: "0",
            META_TOTAL: str(completed),
            META_ERROR: "",
        })
        self._emit(on_progress, completed, completed, False, None)
        logger.info("Sync completed: {} words", completed)

    async def _with_retry(self, factory: Callable[[], Awaitable[Any]], description: str) -> Any:
        """Up to MAX_ATTEMPTS tries, sleeping 1s, 3s, 9s after successive failures."""
        last_error: Optional[RemoteError] = None
        for attempt in range(MAX_ATTEMPTS):
            try:
                return await asyncio.wait_for(factory(), timeout=self.timeout)
            except asyncio.TimeoutError:
                last_error = RemoteTimeoutError(f"{description} timed out after {self.timeout}s")
            except RemoteError as e:
                last_error = e
            delay = BACKOFF_BASE_SECONDS * BACKOFF_FACTOR ** attempt
            logger.warning("{} failed (attempt {}/{}): {}; retrying in {}s",
                           description, attempt + 1, MAX_ATTEMPTS, last_error, delay)
            await self.sleep(delay)
        assert last_error is not None
        raise last_error

    def _record_failure(self, message: str) -> None:
        self.store.set_meta_bulk({META_STATUS: SyncState.FAILED.value, META_ERROR: message})

    @staticmethod
    def _emit(on_progress: Optional[ProgressCallback], current: int, total: int,
              downloading: bool, word: Optional[str]) -> None:
        if on_progress is None:
            return
        on_progress(SyncProgress(
            current=current,
            total=total,
            percentage=_percentage(current, total),
            is_downloading=downloading,
            current_word=word,
        ))

