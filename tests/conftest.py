import datetime
from typing import Dict, List, Optional

import pytest

from kidopedia.db import LocalStore
from kidopedia.exceptions import RemoteConnectionError
from kidopedia.remote import DictionaryLookup, DictionaryResult, ProfileSink, WordSource
from kidopedia.structured import Definition, Meaning, Profile, WordRecord


def make_word(word: str, search_count: int = 0, min_age: int = 2, appropriate: bool = True,
              definition: Optional[str] = None) -> WordRecord:
    return WordRecord(
        word=word,
        phonetic=f"/{word}/",
        meanings=[Meaning("noun", [Definition(definition or f"A thing called {word}.")])],
        is_age_appropriate=appropriate,
        min_age=min_age,
        search_count=search_count,
    )


class Clock:
    def __init__(self, start: Optional[datetime.datetime] = None) -> None:
        self.now = start or datetime.datetime(2025, 1, 10, 12, 0, tzinfo=datetime.timezone.utc)

    def __call__(self) -> datetime.datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now += datetime.timedelta(**kwargs)


class FakeWordSource(WordSource):
    """Deterministic remote corpus ordered by descending search_count."""

    def __init__(self, words: Optional[List[WordRecord]] = None) -> None:
        self.words = sorted(words or [], key=lambda w: -w.search_count)
        self.page_calls: List[int] = []
        self.fetch_one_calls: List[str] = []
        self.increments: List[str] = []
        self.upserts: List[WordRecord] = []
        self.fail_pages: Dict[int, int] = {}

    def _visible(self, max_age: int) -> List[WordRecord]:
        return [w for w in self.words if w.is_age_appropriate and w.min_age <= max_age]

    async def count_words(self, max_age: int) -> int:
        return len(self._visible(max_age))

    async def fetch_page(self, offset: int, page_size: int, max_age: int) -> List[WordRecord]:
        self.page_calls.append(offset)
        if self.fail_pages.get(offset, 0) > 0:
            self.fail_pages[offset] -= 1
            raise RemoteConnectionError(f"network down at offset {offset}")
        return self._visible(max_age)[offset:offset + page_size]

    async def fetch_one(self, word: str) -> Optional[WordRecord]:
        self.fetch_one_calls.append(word)
        return next((w for w in self.words if w.word == word), None)

    async def search_prefix(self, prefix: str, max_age: int, limit: int) -> List[WordRecord]:
        return [w for w in self._visible(max_age) if w.word.startswith(prefix)][:limit]

    async def upsert_word(self, record: WordRecord) -> None:
        self.upserts.append(record)

    async def increment_search_count(self, word: str) -> None:
        self.increments.append(word)


class FakeProfileSink(ProfileSink):
    def __init__(self, fail_ids: Optional[set] = None) -> None:
        self.fail_ids = fail_ids or set()
        self.upserted: List[Profile] = []
        self.deleted: List[str] = []

    async def upsert(self, profile: Profile) -> None:
        if profile.id in self.fail_ids or "*" in self.fail_ids:
            raise RemoteConnectionError("offline")
        self.upserted.append(profile)

    async def delete(self, profile_id: str) -> None:
        if "*" in self.fail_ids:
            raise RemoteConnectionError("offline")
        self.deleted.append(profile_id)


class FakeDictionary(DictionaryLookup):
    def __init__(self, entries: Optional[Dict[str, DictionaryResult]] = None) -> None:
        self.entries = entries or {}
        self.calls: List[str] = []

    async def lookup(self, word: str) -> DictionaryResult:
        self.calls.append(word)
        return self.entries.get(word, DictionaryResult.not_found())


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def store(tmp_path, clock):
    # Use a temporary SQLite DB per test
    s = LocalStore(str(tmp_path / "test.db"), clock=clock)
    s.init_db()
    yield s
    s.close()

