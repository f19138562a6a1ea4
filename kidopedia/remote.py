"""
Remote collaborators: the paginated word source, the profile backup sink and
the dictionary lookup function, plus HTTP implementations that talk to a
Supabase-style REST backend (PostgREST tables + an edge function).
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import httpx
from loguru import logger
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from .exceptions import (
    MalformedResponseError, RemoteConnectionError, RemoteServiceError, RemoteTimeoutError,
)
from .structured import Definition, Meaning, Profile, WordRecord

WORDS_TABLE = "cached_words"
PROFILES_TABLE = "kid_profiles"
DICTIONARY_FUNCTION = "fetch-dictionary"
WORD_COLUMNS = (
    "word,phonetic,audio_url,meanings,origin,kannada_translation,hindi_translation,"
    "is_age_appropriate,min_age,content_flags,complexity_level,search_count"
)


# ── Payload validation ─────────────────────────────────────────

class RemoteDefinition(BaseModel):
    definition: str
    example: Optional[str] = None
    synonyms: List[str] = Field(default_factory=list)
    antonyms: List[str] = Field(default_factory=list)


class RemoteMeaning(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    part_of_speech: str = Field(default="", alias="partOfSpeech")
    definitions: List[RemoteDefinition] = Field(default_factory=list)


def _meanings(items: List[RemoteMeaning]) -> List[Meaning]:
    return [
        Meaning(
            part_of_speech=m.part_of_speech,
            definitions=[
                Definition(d.definition, d.example or "", list(d.synonyms), list(d.antonyms))
                for d in m.definitions
            ],
        )
        for m in items
    ]


def _require_word(value: str) -> str:
    value = value.strip()
    if not value:
        raise ValueError("word must not be blank")
    return value


def _translations(kannada: Optional[str], hindi: Optional[str]) -> Dict[str, str]:
    result: Dict[str, str] = {}
    if kannada:
        result["kn"] = kannada
    if hindi:
        result["hi"] = hindi
    return result


class CachedWordRow(BaseModel):
    """One row of the remote ``cached_words`` table."""
    word: str
    phonetic: Optional[str] = None
    audio_url: Optional[str] = None
    meanings: List[RemoteMeaning] = Field(default_factory=list)
    origin: Optional[str] = None
    kannada_translation: Optional[str] = None
    hindi_translation: Optional[str] = None
    is_age_appropriate: Optional[bool] = True
    min_age: Optional[int] = 2
    content_flags: Optional[List[str]] = None
    complexity_level: Optional[int] = 5
    search_count: Optional[int] = 0

    word_not_blank = field_validator("word")(_require_word)

    def to_record(self) -> WordRecord:
        return WordRecord(
            word=self.word,
            phonetic=self.phonetic or "",
            audio_url=self.audio_url or "",
            meanings=_meanings(self.meanings),
            origin=self.origin or "",
            translations=_translations(self.kannada_translation, self.hindi_translation),
            is_age_appropriate=self.is_age_appropriate is not False,
            min_age=self.min_age if self.min_age is not None else 2,
            content_flags=list(self.content_flags or []),
            complexity_level=self.complexity_level if self.complexity_level is not None else 5,
            search_count=self.search_count or 0,
        )

    @classmethod
    def payload_from_record(cls, record: WordRecord) -> Dict[str, Any]:
        return {
            "word": record.word,
            "phonetic": record.phonetic,
            "audio_url": record.audio_url,
            "meanings": [m.to_dict() for m in record.meanings],
            "origin": record.origin,
            "kannada_translation": record.translations.get("kn", ""),
            "hindi_translation": record.translations.get("hi", ""),
            "is_age_appropriate": record.is_age_appropriate,
            "min_age": record.min_age,
            "content_flags": list(record.content_flags),
            "complexity_level": record.complexity_level,
        }


class DictionaryEntry(BaseModel):
    """Response item of the dictionary+translation function."""
    model_config = ConfigDict(populate_by_name=True)

    word: str
    phonetic: Optional[str] = None
    audio_url: Optional[str] = Field(default=None, alias="audioUrl")
    meanings: List[RemoteMeaning] = Field(default_factory=list)
    origin: Optional[str] = None
    kannada_translation: Optional[str] = Field(default=None, alias="kannadaTranslation")
    hindi_translation: Optional[str] = Field(default=None, alias="hindiTranslation")

    word_not_blank = field_validator("word")(_require_word)

    def to_record(self) -> WordRecord:
        return WordRecord(
            word=self.word,
            phonetic=self.phonetic or "",
            audio_url=self.audio_url or "",
            meanings=_meanings(self.meanings),
            origin=self.origin or "",
            translations=_translations(self.kannada_translation, self.hindi_translation),
        )


def parse_word_rows(payload: Any) -> List[WordRecord]:
    if not isinstance(payload, list):
        raise MalformedResponseError(f"Expected a list of word rows, got {type(payload).__name__}")
    try:
        return [CachedWordRow.model_validate(item).to_record() for item in payload]
    except ValidationError as e:
        raise MalformedResponseError(f"Invalid word row: {e}") from e


@dataclass
class DictionaryResult:
    """Tagged result of a dictionary lookup: found / not_found / malformed."""
    kind: str
    record: Optional[WordRecord] = None
    detail: Optional[str] = None

    FOUND = "found"
    NOT_FOUND = "not_found"
    MALFORMED = "malformed"

    @classmethod
    def found(cls, record: WordRecord) -> "DictionaryResult":
        return cls(cls.FOUND, record)

    @classmethod
    def not_found(cls) -> "DictionaryResult":
        return cls(cls.NOT_FOUND)

    @classmethod
    def malformed(cls, detail: str) -> "DictionaryResult":
        return cls(cls.MALFORMED, detail=detail)


def parse_dictionary_payload(payload: Any) -> DictionaryResult:
    """Validate the loosely-typed function response into a DictionaryResult."""
    if isinstance(payload, dict):
        payload = [payload]
    if not isinstance(payload, list):
        return DictionaryResult.malformed(f"unexpected payload type {type(payload).__name__}")
    if not payload:
        return DictionaryResult.not_found()
    try:
        entry = DictionaryEntry.model_validate(payload[0])
    except ValidationError as e:
        return DictionaryResult.malformed(str(e))
    return DictionaryResult.found(entry.to_record())


# ── Interfaces ─────────────────────────────────────────────────

class WordSource(ABC):
    """Remote corpus of dictionary words (the shared cache table)."""

    @abstractmethod
    async def fetch_page(self, offset: int, page_size: int, max_age: int) -> List[WordRecord]:
        """
        Age-appropriate words up to ``max_age`` ordered by descending popularity.
        A short page means the corpus is exhausted.
        """

    @abstractmethod
    async def fetch_one(self, word: str) -> Optional[WordRecord]:
        """Exact lookup; None when the word is not cached remotely."""

    async def count_words(self, max_age: int) -> int:
        return 0

    async def search_prefix(self, prefix: str, max_age: int, limit: int) -> List[WordRecord]:
        return []

    async def upsert_word(self, record: WordRecord) -> None:
        return None

    async def increment_search_count(self, word: str) -> None:
        return None


class ProfileSink(ABC):
    """Best-effort remote backup of profiles."""

    @abstractmethod
    async def upsert(self, profile: Profile) -> None:
        pass

    @abstractmethod
    async def delete(self, profile_id: str) -> None:
        pass


class DictionaryLookup(ABC):
    """External dictionary+translation fetch, used only on a full cache miss."""

    @abstractmethod
    async def lookup(self, word: str) -> DictionaryResult:
        pass


# ── HTTP implementations ───────────────────────────────────────

class RestTransport:
    """Thin wrapper over httpx that maps failures onto the remote error taxonomy."""

    def __init__(self, base_url: str, api_key: Optional[str] = None, timeout: float = 10.0,
                 client: Optional[httpx.AsyncClient] = None) -> None:
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout
        self.client = client or httpx.AsyncClient(timeout=timeout)
        logger.info("Remote transport initialized for URL: {}", self.base_url)

    def _headers(self, extra: Optional[Dict[str, str]] = None) -> Dict[str, str]:
        headers = {"Accept": "application/json"}
        if self.api_key:
            headers["apikey"] = self.api_key
            headers["Authorization"] = f"Bearer {self.api_key}"
        if extra:
            headers.update(extra)
        return headers

    async def request(self, method: str, path: str, *, params: Optional[Dict[str, Any]] = None,
                      json: Any = None, headers: Optional[Dict[str, str]] = None,
                      timeout: Optional[float] = None, allow_404: bool = False) -> Optional[httpx.Response]:
        url = f"{self.base_url}/{path.lstrip('/')}"
        try:
            response = await self.client.request(
                method, url, params=params, json=json, headers=self._headers(headers),
                timeout=timeout if timeout is not None else self.timeout,
            )
        except httpx.TimeoutException as e:
            raise RemoteTimeoutError(f"{method} {path} timed out") from e
        except httpx.TransportError as e:
            raise RemoteConnectionError(f"{method} {path} failed: {e}") from e
        if allow_404 and response.status_code == 404:
            return None
        if response.status_code >= 400:
            raise RemoteServiceError(f"{method} {path} failed: {response.text[:200]}", response.status_code)
        return response

    async def aclose(self) -> None:
        await self.client.aclose()


def _json(response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError as e:
        raise MalformedResponseError(f"Response is not JSON: {e}") from e


class HttpWordSource(WordSource):
    def __init__(self, transport: RestTransport) -> None:
        self.transport = transport

    @staticmethod
    def _age_filter(max_age: int) -> Dict[str, str]:
        return {"is_age_appropriate": "eq.true", "min_age": f"lte.{max_age}"}

    async def fetch_page(self, offset: int, page_size: int, max_age: int) -> List[WordRecord]:
        params = {
            "select": WORD_COLUMNS,
            **self._age_filter(max_age),
            "order": "search_count.desc",
            "offset": offset,
            "limit": page_size,
        }
        response = await self.transport.request("GET", f"rest/v1/{WORDS_TABLE}", params=params)
        return parse_word_rows(_json(response))

    async def fetch_one(self, word: str) -> Optional[WordRecord]:
        params = {"select": WORD_COLUMNS, "word": f"eq.{word.strip().lower()}", "limit": 1}
        response = await self.transport.request("GET", f"rest/v1/{WORDS_TABLE}", params=params)
        rows = parse_word_rows(_json(response))
        return rows[0] if rows else None

    async def count_words(self, max_age: int) -> int:
        params = {"select": "word", **self._age_filter(max_age)}
        response = await self.transport.request(
            "HEAD", f"rest/v1/{WORDS_TABLE}", params=params, headers={"Prefer": "count=exact"}
        )
        # Content-Range: 0-49/1234 (or */1234 for an empty range)
        content_range = response.headers.get("content-range", "") if response is not None else ""
        total = content_range.rpartition("/")[2]
        return int(total) if total.isdigit() else 0

    async def search_prefix(self, prefix: str, max_age: int, limit: int) -> List[WordRecord]:
        params = {
            "select": WORD_COLUMNS,
            "word": f"ilike.{prefix.lower()}*",
            **self._age_filter(max_age),
            "order": "search_count.desc",
            "limit": limit,
        }
        response = await self.transport.request("GET", f"rest/v1/{WORDS_TABLE}", params=params)
        return parse_word_rows(_json(response))

    async def upsert_word(self, record: WordRecord) -> None:
        await self.transport.request(
            "POST", f"rest/v1/{WORDS_TABLE}",
            params={"on_conflict": "word"},
            json=CachedWordRow.payload_from_record(record),
            headers={"Prefer": "resolution=merge-duplicates,return=minimal"},
        )

    async def increment_search_count(self, word: str) -> None:
        await self.transport.request(
            "POST", "rest/v1/rpc/increment_word_search_count", json={"word_text": word.strip().lower()}
        )


class HttpProfileSink(ProfileSink):
    def __init__(self, transport: RestTransport) -> None:
        self.transport = transport

    async def upsert(self, profile: Profile) -> None:
        body = {
            "id": profile.id,
            "name": profile.name,
            "age": profile.age,
            "gender": profile.gender,
            "avatar_color": profile.avatar_color,
            "avatar_url": profile.avatar_url,
            "current_level": profile.current_level,
            "total_xp": profile.total_xp,
            "words_learned": profile.words_learned,
        }
        await self.transport.request(
            "POST", f"rest/v1/{PROFILES_TABLE}", json=body,
            headers={"Prefer": "resolution=merge-duplicates,return=minimal"},
        )

    async def delete(self, profile_id: str) -> None:
        await self.transport.request("DELETE", f"rest/v1/{PROFILES_TABLE}", params={"id": f"eq.{profile_id}"})


class HttpDictionaryLookup(DictionaryLookup):
    def __init__(self, transport: RestTransport, timeout: float = 15.0) -> None:
        self.transport = transport
        self.timeout = timeout

    async def lookup(self, word: str) -> DictionaryResult:
        response = await self.transport.request(
            "GET", f"functions/v1/{DICTIONARY_FUNCTION}", params={"word": word},
            timeout=self.timeout, allow_404=True,
        )
        if response is None:
            return DictionaryResult.not_found()
        try:
            payload = response.json()
        except ValueError as e:
            return DictionaryResult.malformed(f"response is not JSON: {e}")
        return parse_dictionary_payload(payload)
