import asyncio

import pytest

from kidopedia.exceptions import RemoteConnectionError
from kidopedia.lookup import TIER_DICTIONARY, TIER_LOCAL, TIER_REMOTE_CACHE, LookupChain
from kidopedia.remote import DictionaryLookup, DictionaryResult
from kidopedia.structured import Definition, LookupStatus, Meaning, WordRecord

from conftest import FakeDictionary, FakeWordSource, make_word


def elephant_entry():
    return WordRecord(
        word="elephant",
        phonetic="/ˈel.ɪ.fənt/",
        meanings=[Meaning("noun", [Definition("A very large grey animal with a trunk.", "The elephant drank water.")])],
        translations={"kn": "ಆನೆ", "hi": "हाथी"},
    )


@pytest.mark.asyncio
async def test_fresh_lookup_fills_every_tier(store):
    source = FakeWordSource()
    dictionary = FakeDictionary({"elephant": DictionaryResult.found(elephant_entry())})
    chain = LookupChain(store, source=source, dictionary=dictionary)

    first = await chain.get_word_details("Elephant", age=6)
    await chain.tasks.drain()

    assert first.found
    assert first.tier == TIER_DICTIONARY
    assert first.record.translations["hi"] == "हाथी"
    stored = store.get_word("elephant")
    assert stored is not None
    assert stored.meanings == first.record.meanings
    assert [r.word for r in source.upserts] == ["elephant"]

    second = await chain.get_word_details("elephant", age=6)
    assert second.found
    assert second.tier == TIER_LOCAL
    assert second.record.meanings == first.record.meanings
    assert dictionary.calls == ["elephant"]


@pytest.mark.asyncio
async def test_blocked_word_consults_no_tier(store):
    source = FakeWordSource()
    dictionary = FakeDictionary()
    chain = LookupChain(store, source=source, dictionary=dictionary)

    result = await chain.get_word_details("fuck", age=5)

    assert result.status is LookupStatus.BLOCKED
    assert result.message.startswith("Oops!")
    assert source.fetch_one_calls == []
    assert dictionary.calls == []


@pytest.mark.asyncio
async def test_local_word_gated_by_age(store):
    store.upsert_word(make_word("volcano", min_age=10))
    chain = LookupChain(store, source=FakeWordSource(), dictionary=FakeDictionary())

    young = await chain.get_word_details("volcano", age=7)
    older = await chain.get_word_details("volcano", age=11)

    assert young.status is LookupStatus.BLOCKED
    assert older.found and older.tier == TIER_LOCAL


@pytest.mark.asyncio
async def test_remote_cache_hit_is_filtered_and_stored(store):
    remote = WordRecord("shooter", meanings=[
        Meaning("noun", [Definition("A person who fires a gun."), Definition("A marble used in games.")]),
    ])
    source = FakeWordSource([remote])
    dictionary = FakeDictionary()
    chain = LookupChain(store, source=source, dictionary=dictionary)

    result = await chain.get_word_details("shooter", age=8)
    await chain.tasks.drain()

    assert result.found and result.tier == TIER_REMOTE_CACHE
    [definition] = result.record.meanings[0].definitions
    assert definition.definition == "A marble used in games."
    assert store.get_word("shooter").meanings == result.record.meanings
    assert source.increments == ["shooter"]
    assert dictionary.calls == []


@pytest.mark.asyncio
async def test_remote_cache_hit_with_nothing_left_is_not_found(store):
    remote = WordRecord("rifleman", meanings=[Meaning("noun", [Definition("A soldier with a rifle.")])])
    chain = LookupChain(store, source=FakeWordSource([remote]), dictionary=FakeDictionary())

    result = await chain.get_word_details("rifleman", age=8)

    assert result.status is LookupStatus.NOT_FOUND
    assert store.get_word("rifleman") is None


@pytest.mark.asyncio
async def test_dictionary_entry_classified_once(store):
    entry = WordRecord("grenade", meanings=[Meaning("noun", [Definition("A small bomb thrown by hand.")])])
    # the word itself passes the exact-match list but not the category patterns
    dictionary = FakeDictionary({"grenade": DictionaryResult.found(entry)})
    chain = LookupChain(store, dictionary=dictionary)

    result = await chain.get_word_details("grenade", age=14)
    assert result.status is LookupStatus.BLOCKED
    assert dictionary.calls == []

    chain_for_entry = LookupChain(store, dictionary=FakeDictionary({"torpedo": DictionaryResult.found(
        WordRecord("torpedo", meanings=[Meaning("noun", [Definition("An explosive weapon fired underwater.")])])
    )}))
    restricted = await chain_for_entry.get_word_details("torpedo", age=14)
    assert restricted.status is LookupStatus.BLOCKED
    stored = store.get_word("torpedo")
    assert stored.is_age_appropriate is False
    assert stored.min_age == 16


@pytest.mark.asyncio
async def test_malformed_dictionary_response_is_not_found(store):
    dictionary = FakeDictionary({"blorp": DictionaryResult.malformed("missing word")})
    chain = LookupChain(store, dictionary=dictionary)
    result = await chain.get_word_details("blorp", age=8)
    assert result.status is LookupStatus.NOT_FOUND
    assert store.get_word("blorp") is None


class BrokenSource(FakeWordSource):
    async def fetch_one(self, word):
        raise RemoteConnectionError("no route to host")

    async def search_prefix(self, prefix, max_age, limit):
        raise RemoteConnectionError("no route to host")


class SlowDictionary(DictionaryLookup):
    async def lookup(self, word):
        await asyncio.sleep(10)
        return DictionaryResult.not_found()


@pytest.mark.asyncio
async def test_network_failures_fall_through_to_not_found(store):
    chain = LookupChain(store, source=BrokenSource(), dictionary=FakeDictionary())
    assert (await chain.get_word_details("comet", age=8)).status is LookupStatus.NOT_FOUND
    result = await chain.search_words("com", age=8)
    assert result.words == [] and not result.blocked


@pytest.mark.asyncio
async def test_slow_dictionary_times_out(store):
    chain = LookupChain(store, dictionary=SlowDictionary(), lookup_timeout=0.05)
    result = await chain.get_word_details("comet", age=8)
    assert result.status is LookupStatus.NOT_FOUND


@pytest.mark.asyncio
async def test_offline_skips_remote_tiers(store):
    source = FakeWordSource([make_word("comet")])
    dictionary = FakeDictionary()
    chain = LookupChain(store, source=source, dictionary=dictionary, online=lambda: False)
    result = await chain.get_word_details("comet", age=8)
    assert result.status is LookupStatus.NOT_FOUND
    assert source.fetch_one_calls == []


@pytest.mark.asyncio
async def test_search_blocked_is_distinct_from_empty(store):
    chain = LookupChain(store)
    blocked = await chain.search_words("kill the dragon", age=8)
    empty = await chain.search_words("dragon", age=8)
    assert blocked.blocked and blocked.words == []
    assert blocked.message
    assert not empty.blocked and empty.words == []


@pytest.mark.asyncio
async def test_search_local_results_are_age_filtered(store):
    store.upsert_words([
        make_word("cat", search_count=5),
        make_word("catapult", search_count=9, min_age=12),
        make_word("car", search_count=1),
    ])
    chain = LookupChain(store, source=FakeWordSource([make_word("caterpillar")]))
    result = await chain.search_words("ca", age=8)
    assert [w.word for w in result.words] == ["cat", "car"]


@pytest.mark.asyncio
async def test_search_falls_back_to_remote_and_caches(store):
    source = FakeWordSource([make_word("comet", search_count=3), make_word("comic", search_count=7),
                             make_word("compass", min_age=14)])
    chain = LookupChain(store, source=source)
    result = await chain.search_words("com", age=8)
    assert [w.word for w in result.words] == ["comic", "comet"]
    assert store.get_word("comet") is not None

    local_only = LookupChain(store)
    again = await local_only.search_words("com", age=8)
    assert [w.word for w in again.words] == ["comic", "comet"]


def test_listings_use_viewer_age(store):
    store.upsert_words([make_word("kitten", search_count=3), make_word("volcano", search_count=9, min_age=10)])
    chain = LookupChain(store, age_provider=lambda: 6)
    assert [w.word for w in chain.get_popular_words()] == ["kitten"]
    assert [w.word for w in chain.get_popular_words(age=12)] == ["volcano", "kitten"]
    assert chain.get_random_word().word == "kitten"


class SloppySource(FakeWordSource):
    """Remote cache that hands back rows with an empty word."""

    async def fetch_one(self, word):
        self.fetch_one_calls.append(word)
        return make_word("   ")

    async def search_prefix(self, prefix, max_age, limit):
        return [make_word("zebu", search_count=2), make_word("   ")]


@pytest.mark.asyncio
async def test_blank_remote_rows_are_skipped(store):
    chain = LookupChain(store, source=SloppySource(), dictionary=FakeDictionary())

    result = await chain.search_words("zeb", age=8)
    assert [w.word for w in result.words] == ["zebu"]
    assert store.get_word_count() == 1

    missing = await chain.get_word_details("yak", age=8)
    assert missing.status is LookupStatus.NOT_FOUND
    assert store.get_word_count() == 1
