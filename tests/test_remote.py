import httpx
import pytest

from kidopedia.exceptions import (
    MalformedResponseError, RemoteConnectionError, RemoteServiceError, RemoteTimeoutError,
)
from kidopedia.remote import (
    DictionaryResult, HttpDictionaryLookup, HttpProfileSink, HttpWordSource, RestTransport,
    parse_dictionary_payload,
)
from kidopedia.structured import Profile

BASE = "https://example.supabase.co"

ROW = {
    "word": "Otter",
    "phonetic": "/ˈɒt.ər/",
    "audio_url": None,
    "meanings": [{"partOfSpeech": "noun", "definitions": [
        {"definition": "A furry animal that swims.", "example": None, "synonyms": ["otter", "otter"], "antonyms": []},
    ]}],
    "origin": "Old English otor",
    "kannada_translation": "ನೀರುನಾಯಿ",
    "hindi_translation": None,
    "is_age_appropriate": True,
    "min_age": 3,
    "content_flags": None,
    "complexity_level": 2,
    "search_count": 12,
}


def transport_for(handler):
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return RestTransport(BASE, api_key="secret", client=client)


@pytest.mark.asyncio
async def test_fetch_page_sends_filters_and_parses_rows():
    seen = {}

    def handler(request):
        seen["url"] = request.url
        seen["headers"] = request.headers
        return httpx.Response(200, json=[ROW])

    source = HttpWordSource(transport_for(handler))
    [record] = await source.fetch_page(50, 50, 12)

    params = seen["url"].params
    assert seen["url"].path == "/rest/v1/cached_words"
    assert params["is_age_appropriate"] == "eq.true"
    assert params["min_age"] == "lte.12"
    assert params["order"] == "search_count.desc"
    assert params["offset"] == "50"
    assert params["limit"] == "50"
    assert seen["headers"]["apikey"] == "secret"
    assert seen["headers"]["authorization"] == "Bearer secret"

    assert record.word == "otter"
    assert record.translations == {"kn": "ನೀರುನಾಯಿ"}
    assert record.meanings[0].definitions[0].synonyms == ["otter"]
    assert record.meanings[0].definitions[0].example == ""
    assert record.content_flags == []
    assert record.search_count == 12


@pytest.mark.asyncio
async def test_count_words_reads_content_range():
    def handler(request):
        assert request.method == "HEAD"
        assert request.headers["prefer"] == "count=exact"
        return httpx.Response(200, headers={"Content-Range": "*/1234"})

    assert await HttpWordSource(transport_for(handler)).count_words(12) == 1234


@pytest.mark.asyncio
async def test_fetch_one_missing_returns_none():
    source = HttpWordSource(transport_for(lambda request: httpx.Response(200, json=[])))
    assert await source.fetch_one("nothing") is None


@pytest.mark.asyncio
async def test_search_prefix_uses_ilike():
    seen = {}

    def handler(request):
        seen["params"] = request.url.params
        return httpx.Response(200, json=[ROW])

    records = await HttpWordSource(transport_for(handler)).search_prefix("Ott", 8, 5)
    assert seen["params"]["word"] == "ilike.ott*"
    assert seen["params"]["min_age"] == "lte.8"
    assert [r.word for r in records] == ["otter"]


@pytest.mark.asyncio
async def test_increment_calls_rpc():
    seen = {}

    def handler(request):
        seen["path"] = request.url.path
        seen["body"] = request.content
        return httpx.Response(204)

    await HttpWordSource(transport_for(handler)).increment_search_count(" Otter ")
    assert seen["path"] == "/rest/v1/rpc/increment_word_search_count"
    assert b'"word_text"' in seen["body"] and b'"otter"' in seen["body"]


@pytest.mark.asyncio
async def test_invalid_rows_raise_malformed():
    source = HttpWordSource(transport_for(lambda request: httpx.Response(200, json=[{"phonetic": "x"}])))
    with pytest.raises(MalformedResponseError):
        await source.fetch_page(0, 50, 12)

    source = HttpWordSource(transport_for(lambda request: httpx.Response(200, json={"error": "nope"})))
    with pytest.raises(MalformedResponseError):
        await source.fetch_page(0, 50, 12)


@pytest.mark.asyncio
async def test_http_errors_are_mapped():
    def timeout(request):
        raise httpx.ReadTimeout("slow", request=request)

    def refused(request):
        raise httpx.ConnectError("refused", request=request)

    with pytest.raises(RemoteTimeoutError):
        await HttpWordSource(transport_for(timeout)).fetch_one("otter")
    with pytest.raises(RemoteConnectionError):
        await HttpWordSource(transport_for(refused)).fetch_one("otter")
    with pytest.raises(RemoteServiceError) as excinfo:
        await HttpWordSource(transport_for(lambda r: httpx.Response(500, text="boom"))).fetch_one("otter")
    assert excinfo.value.status_code == 500


@pytest.mark.asyncio
async def test_profile_sink_upsert_and_delete():
    requests = []

    def handler(request):
        requests.append(request)
        return httpx.Response(201)

    sink = HttpProfileSink(transport_for(handler))
    await sink.upsert(Profile(id="p1", name="Mia", age=6, gender="girl", total_xp=30))
    await sink.delete("p1")

    upsert, delete = requests
    assert upsert.method == "POST"
    assert upsert.url.path == "/rest/v1/kid_profiles"
    assert "merge-duplicates" in upsert.headers["prefer"]
    assert b'"total_xp":30' in upsert.content.replace(b" ", b"")
    assert delete.method == "DELETE"
    assert delete.url.params["id"] == "eq.p1"


@pytest.mark.asyncio
async def test_dictionary_lookup_results():
    payload = [{
        "word": "comet",
        "phonetic": "/ˈkɒm.ɪt/",
        "audioUrl": "https://audio.example/comet.mp3",
        "meanings": [{"partOfSpeech": "noun", "definitions": [{"definition": "An icy object in space."}]}],
        "kannadaTranslation": "ಧೂಮಕೇತು",
        "hindiTranslation": "धूमकेतु",
    }]

    def handler(request):
        word = request.url.params["word"]
        if word == "comet":
            return httpx.Response(200, json=payload)
        if word == "garbage":
            return httpx.Response(200, text="<html>")
        return httpx.Response(404, json={"error": "not found"})

    lookup = HttpDictionaryLookup(transport_for(handler))
    found = await lookup.lookup("comet")
    assert found.kind == DictionaryResult.FOUND
    assert found.record.audio_url.endswith("comet.mp3")
    assert found.record.translations == {"kn": "ಧೂಮಕೇತು", "hi": "धूमकेतु"}

    assert (await lookup.lookup("zzz")).kind == DictionaryResult.NOT_FOUND
    assert (await lookup.lookup("garbage")).kind == DictionaryResult.MALFORMED


def test_parse_dictionary_payload_variants():
    assert parse_dictionary_payload([]).kind == DictionaryResult.NOT_FOUND
    assert parse_dictionary_payload("oops").kind == DictionaryResult.MALFORMED
    assert parse_dictionary_payload([{"meanings": []}]).kind == DictionaryResult.MALFORMED
    assert parse_dictionary_payload([{"word": "  "}]).kind == DictionaryResult.MALFORMED
    assert parse_dictionary_payload({"word": "Owl"}).record.word == "owl"


@pytest.mark.asyncio
async def test_blank_word_rows_raise_malformed():
    blank = dict(ROW, word="   ")
    source = HttpWordSource(transport_for(lambda request: httpx.Response(200, json=[ROW, blank])))
    with pytest.raises(MalformedResponseError, match="blank"):
        await source.fetch_page(0, 50, 12)
    with pytest.raises(MalformedResponseError):
        await source.search_prefix("ott", 8, 5)
