"""
Word lookup across the local store, the remote word cache and the remote
dictionary function, cheapest first. Every miss fills the faster tiers.
"""
import asyncio
from typing import Awaitable, Callable, List, Optional, TypeVar

from loguru import logger

from .background import BackgroundTasks
from .content_filter import (
    classify_entry, filter_meanings, get_blocked_message, is_word_appropriate, sanitize_search_query,
)
from .db import LocalStore
from .exceptions import RemoteError, RemoteTimeoutError
from .profiles import DEFAULT_VIEWER_AGE
from .remote import DictionaryLookup, DictionaryResult, WordSource
from .structured import LookupResult, LookupStatus, SearchResult, WordRecord

TIER_LOCAL = "local"
TIER_REMOTE_CACHE = "remote_cache"
TIER_DICTIONARY = "dictionary"

T = TypeVar("T")


def _always_online() -> bool:
    return True


class LookupChain:
    def __init__(
        self,
        store: LocalStore,
        source: Optional[WordSource] = None,
        dictionary: Optional[DictionaryLookup] = None,
        age_provider: Optional[Callable[[], int]] = None,
        online: Callable[[], bool] = _always_online,
        remote_timeout: float = 10.0,
        lookup_timeout: float = 15.0,
        tasks: Optional[BackgroundTasks] = None,
    ) -> None:
        self.store = store
        self.source = source
        self.dictionary = dictionary
        self.age_provider = age_provider or (lambda: DEFAULT_VIEWER_AGE)
        self.online = online
        self.remote_timeout = remote_timeout
        self.lookup_timeout = lookup_timeout
        self.tasks = tasks or BackgroundTasks()

    def _age(self, age: Optional[int]) -> int:
        return age if age is not None else self.age_provider()

    async def _guarded(self, call: Awaitable[T], timeout: float, description: str) -> T:
        try:
            return await asyncio.wait_for(call, timeout=timeout)
        except asyncio.TimeoutError:
            raise RemoteTimeoutError(f"{description} timed out after {timeout}s") from None

    def _blocked(self, age: int) -> LookupResult:
        return LookupResult(LookupStatus.BLOCKED, message=get_blocked_message(age))

    def _deliver(self, record: WordRecord, age: int, tier: str) -> LookupResult:
        if not record.is_visible_to(age):
            logger.debug("{!r} found in {} but gated for age {}", record.word, tier, age)
            return self._blocked(age)
        return LookupResult(LookupStatus.FOUND, record=record, tier=tier)

    # ── Single word ────────────────────────────────────────────

    async def get_word_details(self, word: str, age: Optional[int] = None) -> LookupResult:
        """
        Resolve one word for a viewer.

        Never raises for a missing or blocked word: those come back as
        LookupResult variants. Remote failures fall through to not found.
        """
        viewer_age = self._age(age)
        key = word.strip().lower()
        if not key:
            return LookupResult(LookupStatus.NOT_FOUND)

        check = is_word_appropriate(key, viewer_age)
        if not check.is_appropriate:
            logger.info("Word {!r} blocked for age {}: {}", key, viewer_age, check.reason)
            return self._blocked(viewer_age)

        local = self.store.get_word(key)
        if local is not None:
            return self._deliver(local, viewer_age, TIER_LOCAL)

        if not self.online():
            return LookupResult(LookupStatus.NOT_FOUND)

        if self.source is not None:
            try:
                cached = await self._guarded(self.source.fetch_one(key), self.remote_timeout, "remote cache lookup")
            except RemoteError as e:
                logger.warning("Remote cache lookup for {!r} failed: {}", key, e)
                return LookupResult(LookupStatus.NOT_FOUND)
            if cached is not None and cached.word:
                return self._accept_remote_cached(cached, viewer_age)

        if self.dictionary is not None:
            try:
                result = await self._guarded(self.dictionary.lookup(key), self.lookup_timeout, "dictionary lookup")
            except RemoteError as e:
                logger.warning("Dictionary lookup for {!r} failed: {}", key, e)
                return LookupResult(LookupStatus.NOT_FOUND)
            return self._accept_dictionary(key, result, viewer_age)

        return LookupResult(LookupStatus.NOT_FOUND)

    def _accept_remote_cached(self, record: WordRecord, age: int) -> LookupResult:
        meanings = filter_meanings(record.meanings, age)
        if record.meanings and not meanings:
            logger.info("Every meaning of {!r} was filtered for age {}", record.word, age)
            return LookupResult(LookupStatus.NOT_FOUND)
        filtered = record.with_meanings(meanings)
        self.store.upsert_word(filtered)
        if self.source is not None:
            self.tasks.spawn(
                self._guarded(self.source.increment_search_count(record.word), self.remote_timeout, "search count"),
                f"remote search count for {record.word!r}",
            )
        return self._deliver(filtered, age, TIER_REMOTE_CACHE)

    def _accept_dictionary(self, key: str, result: DictionaryResult, age: int) -> LookupResult:
        if result.kind == DictionaryResult.MALFORMED:
            logger.warning("Dictionary returned a malformed entry for {!r}: {}", key, result.detail)
            return LookupResult(LookupStatus.NOT_FOUND)
        if result.kind == DictionaryResult.NOT_FOUND or result.record is None:
            return LookupResult(LookupStatus.NOT_FOUND)

        # classified once here; later reads only re-check the age gate
        classified = classify_entry(result.record, age)
        self.store.upsert_word(classified)
        if self.source is not None:
            self.tasks.spawn(
                self._guarded(self.source.upsert_word(classified), self.remote_timeout, "remote cache write"),
                f"remote cache write for {classified.word!r}",
            )
        return self._deliver(classified, age, TIER_DICTIONARY)

    # ── Search and listings ────────────────────────────────────

    async def search_words(self, query: str, age: Optional[int] = None, limit: int = 20) -> SearchResult:
        viewer_age = self._age(age)
        sanitized = sanitize_search_query(query, viewer_age)
        if sanitized.is_blocked:
            return SearchResult(blocked=True, message=get_blocked_message(viewer_age))

        words = self.store.search_words(sanitized.sanitized, limit)
        if not words and self.source is not None and self.online():
            try:
                words = await self._guarded(
                    self.source.search_prefix(sanitized.sanitized, viewer_age, limit),
                    self.remote_timeout, "remote search",
                )
            except RemoteError as e:
                logger.warning("Remote search for {!r} failed: {}", sanitized.sanitized, e)
                words = []
            words = [w for w in words if w.word]
            if words:
                self.store.upsert_words(words)

        return SearchResult(words=[w for w in words if w.is_visible_to(viewer_age)])

    def get_popular_words(self, age: Optional[int] = None, limit: int = 20) -> List[WordRecord]:
        return self.store.get_popular_words(limit, max_age=self._age(age))

    def get_random_word(self, age: Optional[int] = None) -> Optional[WordRecord]:
        return self.store.get_random_word(max_age=self._age(age))
