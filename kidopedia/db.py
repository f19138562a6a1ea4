from __future__ import annotations

import datetime
import re
from contextlib import contextmanager
from typing import Any, Callable, Dict, Iterable, Iterator, List, Optional

from loguru import logger
from sqlalchemy import (
    JSON, Boolean, Date, DateTime, ForeignKey, Integer, String, Text, UniqueConstraint,
    column, create_engine, event, func, inspect, text,
)
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.engine import Engine
from sqlalchemy.exc import OperationalError, SQLAlchemyError
from sqlalchemy.orm import DeclarativeBase, Mapped, Session, mapped_column, sessionmaker
from sqlalchemy.pool import StaticPool

from .achievements_data import BUILT_IN_ACHIEVEMENTS
from .exceptions import InputError, PersistenceError
from .scheduler import XP_PER_LEVEL, as_utc, level_for_xp, streak_transition, utcnow
from .structured import (
    Achievement, DailyStreak, Meaning, Profile, ProfileAchievement, WordProgress, WordRecord,
)

SCHEMA_VERSION = "1"
RECENT_SEARCH_LIMIT = 30
WORD_FTS_TABLE = "words_fts"


class Base(DeclarativeBase):
    pass


class Word(Base):
    __tablename__ = "words"
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    word: Mapped[str] = mapped_column(String, nullable=False, unique=True)  # always lowercase
    phonetic: Mapped[Optional[str]] = mapped_column(String)
    audio_url: Mapped[Optional[str]] = mapped_column(String)
    meanings: Mapped[List[Dict[str, Any]]] = mapped_column(JSON, nullable=False, default=list)
    origin: Mapped[Optional[str]] = mapped_column(Text)
    translations: Mapped[Dict[str, str]] = mapped_column(JSON, nullable=False, default=dict)  # "kn", "hi"
    is_age_appropriate: Mapped[bool] = mapped_column(Boolean, default=True)
    min_age: Mapped[int] = mapped_column(Integer, default=2)
    content_flags: Mapped[List[str]] = mapped_column(JSON, nullable=False, default=list)
    complexity_level: Mapped[int] = mapped_column(Integer, default=5)
    search_count: Mapped[int] = mapped_column(Integer, default=0)
    updated_at: Mapped[datetime.datetime] = mapped_column(DateTime, nullable=False)


class ProfileRow(Base):
    __tablename__ = "profiles"
    id: Mapped[str] = mapped_column(String, primary_key=True)
    name: Mapped[str] = mapped_column(String, nullable=False)
    age: Mapped[int] = mapped_column(Integer, nullable=False)
    gender: Mapped[str] = mapped_column(String, nullable=False)
    avatar_color: Mapped[str] = mapped_column(String, nullable=False, default="#3B82F6")
    avatar_url: Mapped[Optional[str]] = mapped_column(String)
    current_level: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    total_xp: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    words_learned: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime.datetime] = mapped_column(DateTime, nullable=False)
    last_active_at: Mapped[datetime.datetime] = mapped_column(DateTime, nullable=False)
    synced_to_remote: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    # bumped on every mutation; a push only marks the revision it sent as synced
    revision: Mapped[int] = mapped_column(Integer, nullable=False, default=0)


class WordProgressRow(Base):
    __tablename__ = "word_progress"
    __table_args__ = (UniqueConstraint("profile_id", "word"),)
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    profile_id: Mapped[str] = mapped_column(String, ForeignKey("profiles.id", ondelete="CASCADE"), nullable=False, index=True)
    word: Mapped[str] = mapped_column(String, nullable=False)
    times_viewed: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    is_favorite: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    last_viewed_at: Mapped[datetime.datetime] = mapped_column(DateTime, nullable=False)
    created_at: Mapped[datetime.datetime] = mapped_column(DateTime, nullable=False)


class AchievementRow(Base):
    __tablename__ = "achievements"
    id: Mapped[str] = mapped_column(String, primary_key=True)
    code: Mapped[str] = mapped_column(String, nullable=False, unique=True)
    title: Mapped[str] = mapped_column(String, nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text)
    icon: Mapped[Optional[str]] = mapped_column(String)
    category: Mapped[str] = mapped_column(String, nullable=False)
    unlock_condition: Mapped[Dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)


class ProfileAchievementRow(Base):
    __tablename__ = "profile_achievements"
    __table_args__ = (UniqueConstraint("profile_id", "achievement_id"),)
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    profile_id: Mapped[str] = mapped_column(String, ForeignKey("profiles.id", ondelete="CASCADE"), nullable=False, index=True)
    achievement_id: Mapped[str] = mapped_column(String, ForeignKey("achievements.id"), nullable=False)
    unlocked_at: Mapped[datetime.datetime] = mapped_column(DateTime, nullable=False)


class DailyStreakRow(Base):
    __tablename__ = "daily_streak"
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    profile_id: Mapped[str] = mapped_column(String, ForeignKey("profiles.id", ondelete="CASCADE"), nullable=False, unique=True)
    streak_count: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    longest_streak: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    last_activity_date: Mapped[datetime.date] = mapped_column(Date, nullable=False)


class RecentSearch(Base):
    __tablename__ = "recent_searches"
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    profile_id: Mapped[Optional[str]] = mapped_column(String, index=True)  # NULL = no active profile
    word: Mapped[str] = mapped_column(String, nullable=False)
    searched_at: Mapped[datetime.datetime] = mapped_column(DateTime, nullable=False)


class SyncMetadata(Base):
    __tablename__ = "sync_metadata"
    key: Mapped[str] = mapped_column(String, primary_key=True)
    value: Mapped[str] = mapped_column(Text, nullable=False)


def _set_sqlite_pragmas(dbapi_connection: Any, connection_record: Any) -> None:
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.close()


def _escape_like(value: str) -> str:
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def _record_to_values(record: WordRecord, now: datetime.datetime) -> Dict[str, Any]:
    return {
        "word": record.word.strip().lower(),
        "phonetic": record.phonetic or None,
        "audio_url": record.audio_url or None,
        "meanings": [m.to_dict() for m in record.meanings],
        "origin": record.origin or None,
        "translations": dict(record.translations),
        "is_age_appropriate": bool(record.is_age_appropriate),
        "min_age": record.min_age,
        "content_flags": list(record.content_flags),
        "complexity_level": record.complexity_level,
        "search_count": max(record.search_count, 0),
        "updated_at": now,
    }


def _to_record(row: Word) -> WordRecord:
    return WordRecord(
        word=row.word,
        phonetic=row.phonetic or "",
        audio_url=row.audio_url or "",
        meanings=[Meaning.from_dict(m) for m in row.meanings or []],
        origin=row.origin or "",
        translations=dict(row.translations or {}),
        is_age_appropriate=bool(row.is_age_appropriate),
        min_age=row.min_age,
        content_flags=list(row.content_flags or []),
        complexity_level=row.complexity_level,
        search_count=row.search_count,
        updated_at=as_utc(row.updated_at),
    )


def _to_profile(row: ProfileRow) -> Profile:
    return Profile(
        id=row.id,
        name=row.name,
        age=row.age,
        gender=row.gender,
        avatar_color=row.avatar_color,
        avatar_url=row.avatar_url,
        current_level=row.current_level,
        total_xp=row.total_xp,
        words_learned=row.words_learned,
        created_at=as_utc(row.created_at),
        last_active_at=as_utc(row.last_active_at),
        synced_to_remote=bool(row.synced_to_remote),
        revision=row.revision,
    )


def _to_progress(row: WordProgressRow) -> WordProgress:
    return WordProgress(
        profile_id=row.profile_id,
        word=row.word,
        times_viewed=row.times_viewed,
        is_favorite=bool(row.is_favorite),
        last_viewed_at=as_utc(row.last_viewed_at),
        created_at=as_utc(row.created_at),
    )


def _to_streak(row: DailyStreakRow) -> DailyStreak:
    return DailyStreak(
        profile_id=row.profile_id,
        streak_count=row.streak_count,
        longest_streak=row.longest_streak,
        last_activity_date=row.last_activity_date,
    )


def _to_achievement(row: AchievementRow) -> Achievement:
    return Achievement(
        id=row.id,
        code=row.code,
        title=row.title,
        description=row.description or "",
        icon=row.icon or "",
        category=row.category,
        unlock_condition=dict(row.unlock_condition or {}),
    )


PROFILE_FIELDS = {
    "name", "age", "gender", "avatar_color", "avatar_url",
    "total_xp", "words_learned", "last_active_at",
}


class LocalStore:
    """
    On-device store for words, profiles, progress and sync checkpoints.

    One instance is built at startup and handed to every component. Each
    public method runs in its own transaction; errors surface as
    PersistenceError and are never retried here.
    """

    def __init__(self, url: str, clock: Optional[Callable[[], datetime.datetime]] = None, **engine_kwargs: Any) -> None:
        if "://" not in url:
            url = f"sqlite:///{url}"
        self.url = url
        self.clock = clock or utcnow
        self.engine: Engine = create_engine(url, **engine_kwargs)
        event.listen(self.engine, "connect", _set_sqlite_pragmas)
        # Prevent attribute expiration on commit so returned objects remain accessible
        self.SessionLocal = sessionmaker(bind=self.engine, expire_on_commit=False)

    @classmethod
    def in_memory(cls, clock: Optional[Callable[[], datetime.datetime]] = None) -> "LocalStore":
        return cls(
            "sqlite://",
            clock=clock,
            poolclass=StaticPool,
            connect_args={"check_same_thread": False},
        )

    def _now(self) -> datetime.datetime:
        # stored naive, read back through as_utc
        return self.clock().astimezone(datetime.timezone.utc).replace(tzinfo=None)

    @contextmanager
    def session(self) -> Iterator[Session]:
        session: Session = self.SessionLocal()
        try:
            yield session
            session.commit()
        except SQLAlchemyError as e:
            session.rollback()
            raise PersistenceError(f"Local store operation failed: {e}") from e
        except BaseException:
            session.rollback()
            raise
        finally:
            session.close()

    # ── Lifecycle ──────────────────────────────────────────────

    def is_db_initialized(self) -> bool:
        """Check if the database is already initialized by checking if tables exist."""
        table_names = set(inspect(self.engine).get_table_names())
        required_tables = {"words", WORD_FTS_TABLE, "profiles", "sync_metadata"}
        return required_tables.issubset(table_names)

    def init_db(self) -> None:
        """Create tables and the word index, seed achievements and stamp the schema version."""
        try:
            Base.metadata.create_all(bind=self.engine)
            with self.engine.begin() as conn:
                conn.execute(text(
                    f"CREATE VIRTUAL TABLE IF NOT EXISTS {WORD_FTS_TABLE} USING fts5(word)"
                ))
        except SQLAlchemyError as e:
            raise PersistenceError(f"Could not create schema: {e}") from e
        self.seed_achievements(BUILT_IN_ACHIEVEMENTS)
        if self.get_meta("db_schema_version") is None:
            self.set_meta("db_schema_version", SCHEMA_VERSION)
        logger.info("Local store initialized at {}", self.url)

    def close(self) -> None:
        self.engine.dispose()

    # ── Words ──────────────────────────────────────────────────

    def _upsert_in_session(self, session: Session, record: WordRecord) -> None:
        values = _record_to_values(record, self._now())
        if not values["word"]:
            raise InputError("Cannot store a word record without a word")
        stmt = sqlite_insert(Word).values(**values)
        overwrite = {k: stmt.excluded[k] for k in values if k not in ("word", "search_count")}
        stmt = stmt.on_conflict_do_update(
            index_elements=[Word.word],
            set_={**overwrite, "search_count": func.max(Word.search_count, stmt.excluded.search_count)},
        )
        session.execute(stmt)
        word_id = session.query(Word.id).filter(Word.word == values["word"]).scalar()
        # the key never changes on update, so only a missing entry needs indexing
        session.execute(
            text(
                f"INSERT INTO {WORD_FTS_TABLE}(rowid, word) SELECT :id, :word "
                f"WHERE NOT EXISTS (SELECT 1 FROM {WORD_FTS_TABLE} WHERE rowid = :id)"
            ),
            {"id": word_id, "word": values["word"]},
        )

    def upsert_word(self, record: WordRecord) -> None:
        """Merge one record by lowercased word; search_count keeps the max, everything else is overwritten."""
        with self.session() as session:
            self._upsert_in_session(session, record)

    def upsert_words(self, records: Iterable[WordRecord]) -> int:
        """Write a batch atomically: every row and index entry, or none."""
        count = 0
        with self.session() as session:
            for record in records:
                self._upsert_in_session(session, record)
                count += 1
        return count

    def get_word(self, word: str) -> Optional[WordRecord]:
        with self.session() as session:
            row = session.query(Word).filter(Word.word == word.strip().lower()).one_or_none()
            return _to_record(row) if row else None

    def search_words(self, query: str, limit: int = 20) -> List[WordRecord]:
        """
        Prefix search ordered by descending search_count.

        Uses the full-text index first and falls back to a LIKE scan when the
        index yields nothing, so very short or odd queries still get answers.
        """
        sanitized = re.sub(r"['\"*]", "", query.strip()).lower()
        if not sanitized:
            return []
        prefix = Word.word.like(f"{_escape_like(sanitized)}%", escape="\\")

        with self.session() as session:
            indexed = (
                text(f"SELECT rowid FROM {WORD_FTS_TABLE} WHERE {WORD_FTS_TABLE} MATCH :match")
                .bindparams(match=f'"{sanitized}"*')
                .columns(column("rowid", Integer))
            )
            try:
                rows = (
                    session.query(Word)
                    .filter(Word.id.in_(indexed), prefix)
                    .order_by(Word.search_count.desc(), Word.word.asc())
                    .limit(limit)
                    .all()
                )
            except OperationalError as e:
                # fts5 rejects some inputs as syntax errors; the scan below still answers
                logger.debug("Word index query failed for {!r}: {}", sanitized, e)
                rows = []

            if not rows:
                rows = (
                    session.query(Word)
                    .filter(prefix)
                    .order_by(Word.search_count.desc(), Word.word.asc())
                    .limit(limit)
                    .all()
                )
            return [_to_record(r) for r in rows]

    def get_all_words(self) -> List[WordRecord]:
        with self.session() as session:
            rows = session.query(Word).order_by(Word.search_count.desc()).all()
            return [_to_record(r) for r in rows]

    def get_random_word(self, max_age: int = 12) -> Optional[WordRecord]:
        with self.session() as session:
            row = (
                session.query(Word)
                .filter(Word.is_age_appropriate.is_(True), Word.min_age <= max_age)
                .order_by(func.random())
                .first()
            )
            return _to_record(row) if row else None

    def get_popular_words(self, limit: int = 20, max_age: int = 12) -> List[WordRecord]:
        with self.session() as session:
            rows = (
                session.query(Word)
                .filter(Word.is_age_appropriate.is_(True), Word.min_age <= max_age)
                .order_by(Word.search_count.desc(), Word.word.asc())
                .limit(limit)
                .all()
            )
            return [_to_record(r) for r in rows]

    def get_word_count(self) -> int:
        with self.session() as session:
            return session.query(func.count(Word.id)).scalar() or 0

    def increment_word_search_count(self, word: str) -> None:
        # single UPDATE so interleaved callers never lose an increment
        with self.session() as session:
            session.query(Word).filter(Word.word == word.strip().lower()).update(
                {Word.search_count: Word.search_count + 1}, synchronize_session=False
            )

    def delete_word(self, word: str) -> bool:
        with self.session() as session:
            word_id = session.query(Word.id).filter(Word.word == word.strip().lower()).scalar()
            if word_id is None:
                return False
            session.execute(text(f"DELETE FROM {WORD_FTS_TABLE} WHERE rowid = :id"), {"id": word_id})
            session.query(Word).filter(Word.id == word_id).delete(synchronize_session=False)
            return True

    def clear_all_words(self) -> None:
        with self.session() as session:
            session.execute(text(f"DELETE FROM {WORD_FTS_TABLE}"))
            session.query(Word).delete(synchronize_session=False)
        logger.info("Cleared all cached words")

    # ── Profiles ───────────────────────────────────────────────

    def insert_profile(self, profile: Profile) -> Profile:
        now = self._now()
        with self.session() as session:
            row = ProfileRow(
                id=profile.id,
                name=profile.name,
                age=profile.age,
                gender=profile.gender,
                avatar_color=profile.avatar_color,
                avatar_url=profile.avatar_url,
                current_level=level_for_xp(profile.total_xp),
                total_xp=profile.total_xp,
                words_learned=profile.words_learned,
                created_at=profile.created_at or now,
                last_active_at=profile.last_active_at or now,
                synced_to_remote=profile.synced_to_remote,
                revision=profile.revision,
            )
            session.add(row)
            session.flush()
            return _to_profile(row)

    def update_profile(self, profile_id: str, mark_unsynced: bool = True, **updates: Any) -> Optional[Profile]:
        """
        Apply field updates. ``total_xp`` and ``words_learned`` may only grow;
        ``current_level`` is always derived from ``total_xp``.
        """
        unknown = set(updates) - PROFILE_FIELDS
        if unknown:
            raise InputError(f"Unknown profile fields: {sorted(unknown)}")
        with self.session() as session:
            row = session.get(ProfileRow, profile_id)
            if row is None:
                return None
            for key in ("total_xp", "words_learned"):
                if key in updates and updates[key] < getattr(row, key):
                    raise InputError(f"{key} cannot decrease ({getattr(row, key)} -> {updates[key]})")
            for key, value in updates.items():
                if key == "last_active_at" and value is not None:
                    value = value.astimezone(datetime.timezone.utc).replace(tzinfo=None)
                setattr(row, key, value)
            row.current_level = level_for_xp(row.total_xp)
            if mark_unsynced:
                row.synced_to_remote = False
                row.revision = row.revision + 1
            session.flush()
            return _to_profile(row)

    def add_profile_counters(self, profile_id: str, xp: int = 0, words_learned: int = 0) -> Optional[Profile]:
        """Atomically add to the monotonic counters and re-derive the level."""
        if xp < 0 or words_learned < 0:
            raise InputError("Profile counters only increase")
        with self.session() as session:
            updated = session.query(ProfileRow).filter(ProfileRow.id == profile_id).update(
                {
                    ProfileRow.total_xp: ProfileRow.total_xp + xp,
                    ProfileRow.words_learned: ProfileRow.words_learned + words_learned,
                    ProfileRow.current_level: (ProfileRow.total_xp + xp) // XP_PER_LEVEL + 1,
                    ProfileRow.synced_to_remote: False,
                    ProfileRow.revision: ProfileRow.revision + 1,
                },
                synchronize_session=False,
            )
            if not updated:
                return None
            row = session.get(ProfileRow, profile_id)
            return _to_profile(row) if row else None

    def mark_profile_synced(self, profile_id: str, revision: int) -> bool:
        """Flag a profile synced only if it is still at the revision that was pushed."""
        with self.session() as session:
            updated = (
                session.query(ProfileRow)
                .filter(ProfileRow.id == profile_id, ProfileRow.revision == revision)
                .update({ProfileRow.synced_to_remote: True}, synchronize_session=False)
            )
            return bool(updated)

    def delete_profile(self, profile_id: str) -> bool:
        """Delete a profile; progress, achievements and streak rows cascade."""
        with self.session() as session:
            session.query(RecentSearch).filter(RecentSearch.profile_id == profile_id).delete(synchronize_session=False)
            deleted = session.query(ProfileRow).filter(ProfileRow.id == profile_id).delete(synchronize_session=False)
            return bool(deleted)

    def get_profile(self, profile_id: str) -> Optional[Profile]:
        with self.session() as session:
            row = session.get(ProfileRow, profile_id)
            return _to_profile(row) if row else None

    def get_all_profiles(self) -> List[Profile]:
        with self.session() as session:
            rows = session.query(ProfileRow).order_by(ProfileRow.last_active_at.desc()).all()
            return [_to_profile(r) for r in rows]

    def get_unsynced_profiles(self) -> List[Profile]:
        with self.session() as session:
            rows = session.query(ProfileRow).filter(ProfileRow.synced_to_remote.is_(False)).all()
            return [_to_profile(r) for r in rows]

    # ── Word progress ──────────────────────────────────────────

    def _progress_query(self, session: Session, profile_id: str, word: str) -> Any:
        return session.query(WordProgressRow).filter(
            WordProgressRow.profile_id == profile_id,
            WordProgressRow.word == word.strip().lower(),
        )

    def get_progress(self, profile_id: str, word: str) -> Optional[WordProgress]:
        with self.session() as session:
            row = self._progress_query(session, profile_id, word).one_or_none()
            return _to_progress(row) if row else None

    def record_word_view(self, profile_id: str, word: str) -> WordProgress:
        """Create the progress row on first view, otherwise bump times_viewed."""
        now = self._now()
        key = word.strip().lower()
        with self.session() as session:
            stmt = sqlite_insert(WordProgressRow).values(
                profile_id=profile_id, word=key, times_viewed=1,
                is_favorite=False, last_viewed_at=now, created_at=now,
            )
            stmt = stmt.on_conflict_do_update(
                index_elements=[WordProgressRow.profile_id, WordProgressRow.word],
                set_={
                    "times_viewed": WordProgressRow.times_viewed + 1,
                    "last_viewed_at": stmt.excluded.last_viewed_at,
                },
            )
            session.execute(stmt)
            row = self._progress_query(session, profile_id, key).one()
            return _to_progress(row)

    def toggle_favorite(self, profile_id: str, word: str) -> bool:
        """Flip the favorite flag; a never-viewed word gets a row with times_viewed=1."""
        now = self._now()
        with self.session() as session:
            row = self._progress_query(session, profile_id, word).one_or_none()
            if row is None:
                session.add(WordProgressRow(
                    profile_id=profile_id, word=word.strip().lower(), times_viewed=1,
                    is_favorite=True, last_viewed_at=now, created_at=now,
                ))
                return True
            row.is_favorite = not row.is_favorite
            return bool(row.is_favorite)

    def get_word_progress(self, profile_id: str) -> List[WordProgress]:
        with self.session() as session:
            rows = (
                session.query(WordProgressRow)
                .filter(WordProgressRow.profile_id == profile_id)
                .order_by(WordProgressRow.last_viewed_at.desc())
                .all()
            )
            return [_to_progress(r) for r in rows]

    def get_favorite_words(self, profile_id: str) -> List[WordProgress]:
        with self.session() as session:
            rows = (
                session.query(WordProgressRow)
                .filter(WordProgressRow.profile_id == profile_id, WordProgressRow.is_favorite.is_(True))
                .order_by(WordProgressRow.last_viewed_at.desc())
                .all()
            )
            return [_to_progress(r) for r in rows]

    def get_favorites_count(self, profile_id: str) -> int:
        with self.session() as session:
            return (
                session.query(func.count(WordProgressRow.id))
                .filter(WordProgressRow.profile_id == profile_id, WordProgressRow.is_favorite.is_(True))
                .scalar()
                or 0
            )

    # ── Achievements ───────────────────────────────────────────

    def seed_achievements(self, achievements: Iterable[Achievement]) -> None:
        with self.session() as session:
            for a in achievements:
                session.execute(
                    sqlite_insert(AchievementRow)
                    .values(
                        id=a.id, code=a.code, title=a.title, description=a.description,
                        icon=a.icon, category=a.category, unlock_condition=a.unlock_condition,
                    )
                    .on_conflict_do_nothing()
                )

    def get_achievements(self) -> List[Achievement]:
        with self.session() as session:
            return [_to_achievement(r) for r in session.query(AchievementRow).order_by(AchievementRow.id).all()]

    def get_profile_achievements(self, profile_id: str) -> List[ProfileAchievement]:
        with self.session() as session:
            rows = (
                session.query(ProfileAchievementRow)
                .filter(ProfileAchievementRow.profile_id == profile_id)
                .order_by(ProfileAchievementRow.unlocked_at.desc())
                .all()
            )
            return [ProfileAchievement(r.profile_id, r.achievement_id, as_utc(r.unlocked_at)) for r in rows]

    def unlock_achievement(self, profile_id: str, achievement_id: str) -> bool:
        """Append an unlock record; returns False if it was already unlocked."""
        with self.session() as session:
            result = session.execute(
                sqlite_insert(ProfileAchievementRow)
                .values(profile_id=profile_id, achievement_id=achievement_id, unlocked_at=self._now())
                .on_conflict_do_nothing()
            )
            return bool(result.rowcount)

    # ── Daily streak ───────────────────────────────────────────

    def get_daily_streak(self, profile_id: str) -> Optional[DailyStreak]:
        with self.session() as session:
            row = session.query(DailyStreakRow).filter_by(profile_id=profile_id).one_or_none()
            return _to_streak(row) if row else None

    def update_daily_activity(self, profile_id: str, today: Optional[datetime.date] = None) -> DailyStreak:
        today = today or self.clock().date()
        with self.session() as session:
            row = session.query(DailyStreakRow).filter_by(profile_id=profile_id).one_or_none()
            if row is None:
                row = DailyStreakRow(profile_id=profile_id, streak_count=1, longest_streak=1, last_activity_date=today)
                session.add(row)
                session.flush()
                return _to_streak(row)
            streak, longest, changed = streak_transition(
                row.streak_count, row.longest_streak, row.last_activity_date, today
            )
            if changed:
                row.streak_count = streak
                row.longest_streak = longest
                row.last_activity_date = today
            return _to_streak(row)

    # ── Metadata ───────────────────────────────────────────────

    def get_meta(self, key: str) -> Optional[str]:
        with self.session() as session:
            row = session.get(SyncMetadata, key)
            return row.value if row else None

    def set_meta(self, key: str, value: str) -> None:
        self.set_meta_bulk({key: value})

    def set_meta_bulk(self, values: Dict[str, str]) -> None:
        """Write several keys in one transaction."""
        with self.session() as session:
            for key, value in values.items():
                stmt = sqlite_insert(SyncMetadata).values(key=key, value=str(value))
                session.execute(stmt.on_conflict_do_update(
                    index_elements=[SyncMetadata.key], set_={"value": stmt.excluded.value}
                ))

    def delete_meta(self, key: str) -> None:
        with self.session() as session:
            session.query(SyncMetadata).filter(SyncMetadata.key == key).delete(synchronize_session=False)

    def get_meta_bulk(self, keys: Iterable[str]) -> Dict[str, str]:
        keys = list(keys)
        with self.session() as session:
            rows = session.query(SyncMetadata).filter(SyncMetadata.key.in_(keys)).all()
            return {r.key: r.value for r in rows}

    # ── Recent searches ────────────────────────────────────────

    @staticmethod
    def _owner_filter(profile_id: Optional[str]) -> Any:
        if profile_id is None:
            return RecentSearch.profile_id.is_(None)
        return RecentSearch.profile_id == profile_id

    def add_recent_search(self, profile_id: Optional[str], word: str) -> None:
        """Move ``word`` to the front of the owner's log, keeping the newest 30."""
        key = word.strip().lower()
        if not key:
            return
        owner = self._owner_filter(profile_id)
        with self.session() as session:
            session.query(RecentSearch).filter(owner, RecentSearch.word == key).delete(synchronize_session=False)
            session.add(RecentSearch(profile_id=profile_id, word=key, searched_at=self._now()))
            session.flush()
            keep = (
                session.query(RecentSearch.id)
                .filter(owner)
                .order_by(RecentSearch.searched_at.desc(), RecentSearch.id.desc())
                .limit(RECENT_SEARCH_LIMIT)
                .subquery()
            )
            session.query(RecentSearch).filter(owner, RecentSearch.id.notin_(keep.select())).delete(
                synchronize_session=False
            )

    def get_recent_searches(self, profile_id: Optional[str], limit: int = 20) -> List[str]:
        with self.session() as session:
            rows = (
                session.query(RecentSearch.word)
                .filter(self._owner_filter(profile_id))
                .order_by(RecentSearch.searched_at.desc(), RecentSearch.id.desc())
                .limit(limit)
                .all()
            )
            return [r.word for r in rows]

    def clear_recent_searches(self, profile_id: Optional[str]) -> None:
        with self.session() as session:
            session.query(RecentSearch).filter(self._owner_filter(profile_id)).delete(synchronize_session=False)
