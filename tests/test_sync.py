import asyncio

import pytest

from kidopedia.db import LocalStore
from kidopedia.exceptions import RemoteTimeoutError, SyncFailedError
from kidopedia.structured import SyncState
from kidopedia.sync import CANCELLED_MESSAGE, SyncOrchestrator

from conftest import FakeWordSource, make_word


class RecordingSleep:
    def __init__(self):
        self.delays = []

    async def __call__(self, delay):
        self.delays.append(delay)


def corpus(n=23):
    # distinct counts so the popularity order is deterministic
    return [make_word(f"word{i:03d}", search_count=1000 - i) for i in range(n)]


def orchestrator(store, source, clock, sleep=None, page_size=5):
    return SyncOrchestrator(store, source, clock=clock, sleep=sleep or RecordingSleep(), page_size=page_size)


@pytest.mark.asyncio
async def test_full_sync_downloads_everything(store, clock):
    source = FakeWordSource(corpus() + [make_word("grownup", search_count=5000, min_age=16)])
    sync = orchestrator(store, source, clock)
    progress = []

    status = await sync.start_sync(progress.append)

    assert status.status is SyncState.COMPLETED
    assert store.get_word_count() == 23
    assert store.get_word("grownup") is None
    assert source.page_calls == [0, 5, 10, 15, 20]
    assert [p.current for p in progress if p.is_downloading][1:] == [5, 10, 15, 20, 23]
    assert progress[-1].percentage == 100
    assert status.words_completed == 23
    assert store.get_meta("sync_last_offset") == "0"


@pytest.mark.asyncio
async def test_exact_multiple_ends_on_empty_page(store, clock):
    source = FakeWordSource(corpus(10))
    sync = orchestrator(store, source, clock)
    await sync.start_sync()
    assert source.page_calls == [0, 5, 10]
    assert store.get_word_count() == 10


@pytest.mark.asyncio
async def test_interrupted_sync_resumes_at_next_page(store, clock, tmp_path):
    words = corpus()
    source = FakeWordSource(words)
    sleep = RecordingSleep()
    sync = orchestrator(store, source, clock, sleep)

    def cancel_after_two_pages(progress):
        if progress.current == 10:
            sync.cancel_sync()

    status = await sync.start_sync(cancel_after_two_pages)
    assert status.status is SyncState.FAILED
    assert status.error_message == CANCELLED_MESSAGE
    assert store.get_meta("sync_last_offset") == "10"
    assert store.get_word_count() == 10

    source.page_calls.clear()
    status = await sync.start_sync()
    assert status.status is SyncState.COMPLETED
    assert source.page_calls == [10, 15, 20]

    uninterrupted = FakeWordSource(words)
    other = LocalStore(str(tmp_path / "other.db"), clock=clock)
    other.init_db()
    await orchestrator(other, uninterrupted, clock).start_sync()
    assert {w.word for w in store.get_all_words()} == {w.word for w in other.get_all_words()}
    other.close()


@pytest.mark.asyncio
async def test_ninety_day_schedule(store, clock):
    sync = orchestrator(store, FakeWordSource(corpus(3)), clock)
    assert sync.is_sync_needed()
    assert sync.get_sync_status().status is SyncState.NEVER_SYNCED

    await sync.start_sync()
    assert not sync.is_sync_needed()
    assert sync.get_days_until_next_sync() == 90

    clock.advance(days=89, hours=23)
    assert not sync.is_sync_needed()
    clock.advance(hours=1)
    assert sync.is_sync_needed()
    clock.advance(days=2)
    assert sync.get_days_until_next_sync() == -2


@pytest.mark.asyncio
async def test_transient_failure_is_retried_with_backoff(store, clock):
    source = FakeWordSource(corpus(7))
    source.fail_pages = {5: 2}
    sleep = RecordingSleep()
    sync = orchestrator(store, source, clock, sleep)

    status = await sync.start_sync()

    assert status.status is SyncState.COMPLETED
    assert source.page_calls == [0, 5, 5, 5]
    assert [d for d in sleep.delays if d >= 1] == [1, 3]


@pytest.mark.asyncio
async def test_persistent_failure_marks_failed_and_keeps_checkpoint(store, clock):
    source = FakeWordSource(corpus(12))
    source.fail_pages = {5: 10}
    sleep = RecordingSleep()
    sync = orchestrator(store, source, clock, sleep)

    with pytest.raises(SyncFailedError, match="network down"):
        await sync.start_sync()

    status = sync.get_sync_status()
    assert status.status is SyncState.FAILED
    assert "network down" in status.error_message
    assert [d for d in sleep.delays if d >= 1] == [1, 3, 9]
    assert store.get_meta("sync_last_offset") == "5"
    assert not sync.is_running

    source.fail_pages = {}
    status = await sync.start_sync()
    assert status.status is SyncState.COMPLETED
    assert status.error_message is None
    assert store.get_word_count() == 12


@pytest.mark.asyncio
async def test_force_sync_restarts_from_zero(store, clock):
    source = FakeWordSource(corpus(8))
    sync = orchestrator(store, source, clock)
    await sync.start_sync()
    source.page_calls.clear()

    status = await sync.force_sync()
    assert status.status is SyncState.COMPLETED
    assert source.page_calls == [0, 5]


@pytest.mark.asyncio
async def test_sync_without_source_fails(store, clock):
    sync = SyncOrchestrator(store, None, clock=clock)
    with pytest.raises(SyncFailedError):
        await sync.start_sync()


@pytest.mark.asyncio
async def test_download_status(store, clock):
    sync = orchestrator(store, FakeWordSource(corpus(4)), clock)
    before = sync.get_download_status()
    assert before.is_downloaded is False
    assert before.version == "1"

    await sync.start_sync()
    after = sync.get_download_status()
    assert after.is_downloaded
    assert after.downloaded_words == 4
    assert after.total_words == 4
    assert after.last_download_date == clock()


class HangingSource(FakeWordSource):
    """Never answers the page at ``hang_at``."""

    def __init__(self, words, hang_at):
        super().__init__(words)
        self.hang_at = hang_at
        self.reached = asyncio.Event()

    async def fetch_page(self, offset, page_size, max_age):
        if offset == self.hang_at:
            self.page_calls.append(offset)
            self.reached.set()
            await asyncio.Event().wait()
        return await super().fetch_page(offset, page_size, max_age)


@pytest.mark.asyncio
async def test_hanging_page_times_out_each_attempt(store, clock):
    source = HangingSource(corpus(3), hang_at=0)
    sleep = RecordingSleep()
    sync = SyncOrchestrator(store, source, clock=clock, sleep=sleep, timeout=0.01, page_size=5)

    with pytest.raises(SyncFailedError, match="timed out") as excinfo:
        await sync.start_sync()

    assert isinstance(excinfo.value.__cause__, RemoteTimeoutError)
    assert source.page_calls == [0, 0, 0]
    assert sleep.delays == [1, 3, 9]
    status = sync.get_sync_status()
    assert status.status is SyncState.FAILED
    assert "timed out" in status.error_message


@pytest.mark.asyncio
async def test_cancelling_the_sync_task_leaves_failed_state(store, clock):
    source = HangingSource(corpus(12), hang_at=5)
    sync = orchestrator(store, source, clock)

    task = asyncio.ensure_future(sync.start_sync())
    await source.reached.wait()
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    status = sync.get_sync_status()
    assert status.status is SyncState.FAILED
    assert status.error_message == CANCELLED_MESSAGE
    assert store.get_meta("sync_last_offset") == "5"
    assert store.get_word_count() == 5
    assert not sync.is_running


@pytest.mark.asyncio
async def test_blank_word_in_page_fails_the_sync(store, clock):
    source = FakeWordSource(corpus(3) + [make_word("   ", search_count=999)])
    sync = orchestrator(store, source, clock)

    with pytest.raises(SyncFailedError, match="without a word"):
        await sync.start_sync()

    status = sync.get_sync_status()
    assert status.status is SyncState.FAILED
    assert store.get_word_count() == 0
    assert status.words_completed == 0
    assert not sync.is_running


@pytest.mark.asyncio
async def test_failing_progress_callback_fails_the_sync(store, clock):
    sync = orchestrator(store, FakeWordSource(corpus(3)), clock)

    def broken(progress):
        raise KeyError("progress bar gone")

    with pytest.raises(SyncFailedError):
        await sync.start_sync(broken)

    assert sync.get_sync_status().status is SyncState.FAILED
    assert not sync.is_running
