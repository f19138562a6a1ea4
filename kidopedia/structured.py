import datetime
import enum
from dataclasses import dataclass, field, replace
from typing import Any, Dict, List, Optional


def _unique(items: Optional[List[str]]) -> List[str]:
    seen: List[str] = []
    for item in items or []:
        if item and item not in seen:
            seen.append(item)
    return seen


@dataclass
class Definition:
    definition: str
    example: str = ""
    synonyms: List[str] = field(default_factory=list)
    antonyms: List[str] = field(default_factory=list)

    def __post_init__(self) -> None:
        # synonyms/antonyms behave as sets; order of first appearance is kept
        self.synonyms = _unique(self.synonyms)
        self.antonyms = _unique(self.antonyms)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "definition": self.definition,
            "example": self.example,
            "synonyms": list(self.synonyms),
            "antonyms": list(self.antonyms),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Definition":
        return cls(
            definition=data.get("definition") or "",
            example=data.get("example") or "",
            synonyms=list(data.get("synonyms") or []),
            antonyms=list(data.get("antonyms") or []),
        )


@dataclass
class Meaning:
    part_of_speech: str
    definitions: List[Definition] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "partOfSpeech": self.part_of_speech,
            "definitions": [d.to_dict() for d in self.definitions],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Meaning":
        return cls(
            part_of_speech=data.get("partOfSpeech") or data.get("part_of_speech") or "",
            definitions=[Definition.from_dict(d) for d in data.get("definitions") or []],
        )


@dataclass
class WordRecord:
    """A dictionary entry as held by every tier of the lookup chain."""
    word: str
    phonetic: str = ""
    audio_url: str = ""
    meanings: List[Meaning] = field(default_factory=list)
    origin: str = ""
    translations: Dict[str, str] = field(default_factory=dict)
    is_age_appropriate: bool = True
    min_age: int = 2
    content_flags: List[str] = field(default_factory=list)
    complexity_level: int = 5
    search_count: int = 0
    updated_at: Optional[datetime.datetime] = None

    def __post_init__(self) -> None:
        self.word = self.word.strip().lower()
        self.content_flags = _unique(self.content_flags)

    def is_visible_to(self, age: int) -> bool:
        return self.is_age_appropriate and self.min_age <= age

    def with_meanings(self, meanings: List[Meaning]) -> "WordRecord":
        return replace(self, meanings=meanings)


class Gender(str, enum.Enum):
    BOY = "boy"
    GIRL = "girl"
    OTHER = "other"


@dataclass
class Profile:
    id: str
    name: str
    age: int
    gender: str
    avatar_color: str = "#3B82F6"
    avatar_url: Optional[str] = None
    current_level: int = 1
    total_xp: int = 0
    words_learned: int = 0
    created_at: Optional[datetime.datetime] = None
    last_active_at: Optional[datetime.datetime] = None
    synced_to_remote: bool = False
    revision: int = 0


@dataclass
class WordProgress:
    profile_id: str
    word: str
    times_viewed: int
    is_favorite: bool
    last_viewed_at: Optional[datetime.datetime] = None
    created_at: Optional[datetime.datetime] = None


@dataclass
class DailyStreak:
    profile_id: str
    streak_count: int
    longest_streak: int
    last_activity_date: datetime.date


@dataclass
class Achievement:
    id: str
    code: str
    title: str
    description: str
    icon: str
    category: str
    unlock_condition: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ProfileAchievement:
    profile_id: str
    achievement_id: str
    unlocked_at: Optional[datetime.datetime] = None


class SyncState(str, enum.Enum):
    NEVER_SYNCED = "never_synced"
    IDLE = "idle"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class SyncStatus:
    status: SyncState
    last_completed_at: Optional[datetime.datetime]
    next_due_at: Optional[datetime.datetime]
    days_until_next_sync: Optional[int]
    words_total: int
    words_completed: int
    percentage: int
    error_message: Optional[str]


@dataclass
class SyncProgress:
    current: int
    total: int
    percentage: int
    is_downloading: bool
    current_word: Optional[str] = None


@dataclass
class DownloadStatus:
    is_downloaded: bool
    total_words: int
    downloaded_words: int
    version: Optional[str]
    last_download_date: Optional[datetime.datetime]


class LookupStatus(str, enum.Enum):
    FOUND = "found"
    NOT_FOUND = "not_found"
    BLOCKED = "blocked"


@dataclass
class LookupResult:
    status: LookupStatus
    record: Optional[WordRecord] = None
    tier: Optional[str] = None
    message: Optional[str] = None

    @property
    def found(self) -> bool:
        return self.status is LookupStatus.FOUND


@dataclass
class SearchResult:
    words: List[WordRecord] = field(default_factory=list)
    blocked: bool = False
    message: Optional[str] = None
