"""
Learner profiles and their progress.

Profiles are created and edited locally first. Each change marks the profile
unsynced and kicks off a detached push to the remote backup; a failed push
only leaves the flag set for the next startup sweep.
"""
import asyncio
import datetime
import uuid
from typing import Any, Callable, Dict, List, Optional

from loguru import logger

from .background import BackgroundTasks
from .db import LocalStore
from .exceptions import InputError, RemoteError
from .remote import ProfileSink, WordSource
from .scheduler import utcnow
from .structured import (
    Achievement, DailyStreak, Gender, Profile, ProfileAchievement, WordProgress,
)

MIN_AGE = 2
MAX_AGE = 18
DEFAULT_VIEWER_AGE = 8
XP_PER_NEW_WORD = 10
XP_PER_REVIEW = 2
ACTIVE_PROFILE_KEY = "active_profile_id"
AVATAR_COLORS = ["#3B82F6", "#10B981", "#F59E0B", "#EF4444", "#8B5CF6", "#EC4899"]


def validate_age(age: Any) -> int:
    if isinstance(age, bool) or not isinstance(age, int):
        raise InputError(f"Age must be an integer, got {age!r}")
    if not MIN_AGE <= age <= MAX_AGE:
        raise InputError(f"Age must be between {MIN_AGE} and {MAX_AGE}, got {age}")
    return age


def validate_gender(gender: Any) -> str:
    try:
        return Gender(gender).value
    except ValueError:
        raise InputError(f"Gender must be one of {[g.value for g in Gender]}, got {gender!r}") from None


def validate_name(name: Any) -> str:
    if not isinstance(name, str) or not name.strip():
        raise InputError("Name must be a non-empty string")
    return name.strip()


class ProfileService:
    def __init__(
        self,
        store: LocalStore,
        sink: Optional[ProfileSink] = None,
        words: Optional[WordSource] = None,
        default_age: int = DEFAULT_VIEWER_AGE,
        timeout: float = 10.0,
        clock: Optional[Callable[[], datetime.datetime]] = None,
        tasks: Optional[BackgroundTasks] = None,
    ) -> None:
        self.store = store
        self.sink = sink
        self.words = words
        self.default_age = default_age
        self.timeout = timeout
        self.clock = clock or utcnow
        self.tasks = tasks or BackgroundTasks()

    # ── CRUD ───────────────────────────────────────────────────

    def create_profile(self, name: str, age: int, gender: str,
                       avatar_color: Optional[str] = None, avatar_url: Optional[str] = None) -> Profile:
        """Create a profile locally; usable immediately with no network."""
        profile = Profile(
            id=str(uuid.uuid4()),
            name=validate_name(name),
            age=validate_age(age),
            gender=validate_gender(gender),
            avatar_color=avatar_color or AVATAR_COLORS[0],
            avatar_url=avatar_url,
        )
        created = self.store.insert_profile(profile)
        logger.info("Created profile {} ({})", created.name, created.id)
        self._schedule_push(created)
        return created

    def update_profile(self, profile_id: str, **updates: Any) -> Optional[Profile]:
        if "name" in updates:
            updates["name"] = validate_name(updates["name"])
        if "age" in updates:
            updates["age"] = validate_age(updates["age"])
        if "gender" in updates:
            updates["gender"] = validate_gender(updates["gender"])
        updated = self.store.update_profile(profile_id, **updates)
        if updated is not None:
            self._schedule_push(updated)
        return updated

    def delete_profile(self, profile_id: str) -> bool:
        deleted = self.store.delete_profile(profile_id)
        if self.store.get_meta(ACTIVE_PROFILE_KEY) == profile_id:
            self.store.delete_meta(ACTIVE_PROFILE_KEY)
        if deleted and self.sink is not None:
            self.tasks.spawn(self._remote_delete(profile_id), f"remote delete of profile {profile_id}")
        return deleted

    def get_profile(self, profile_id: str) -> Optional[Profile]:
        return self.store.get_profile(profile_id)

    def get_all_profiles(self) -> List[Profile]:
        return self.store.get_all_profiles()

    # ── Active profile / viewer age ────────────────────────────

    def get_active_profile(self) -> Optional[Profile]:
        profile_id = self.store.get_meta(ACTIVE_PROFILE_KEY)
        if not profile_id:
            return None
        return self.store.get_profile(profile_id)

    def set_active_profile(self, profile_id: str) -> Optional[Profile]:
        profile = self.store.update_profile(profile_id, mark_unsynced=False, last_active_at=self.clock())
        if profile is None:
            return None
        self.store.set_meta(ACTIVE_PROFILE_KEY, profile_id)
        return profile

    def clear_active_profile(self) -> None:
        self.store.delete_meta(ACTIVE_PROFILE_KEY)

    def viewer_age(self) -> int:
        active = self.get_active_profile()
        return active.age if active else self.default_age

    # ── Gamification ───────────────────────────────────────────

    def add_xp(self, profile_id: str, amount: int) -> Optional[Profile]:
        if amount < 0:
            raise InputError("XP can only be added")
        profile = self.store.add_profile_counters(profile_id, xp=amount)
        if profile is not None:
            self._schedule_push(profile)
        return profile

    def increment_words_learned(self, profile_id: str) -> Optional[Profile]:
        profile = self.store.add_profile_counters(profile_id, words_learned=1)
        if profile is not None:
            self._schedule_push(profile)
        return profile

    def track_word_view(self, profile_id: str, word: str) -> WordProgress:
        """
        Record that a profile looked at a word.

        A first view counts toward words learned and earns more XP than a
        repeat. Every view counts as daily activity and bumps the word's
        popularity locally and, detached, remotely.
        """
        progress = self.store.record_word_view(profile_id, word)
        first_view = progress.times_viewed == 1
        self._count_activity(profile_id, first_view)
        self.store.increment_word_search_count(word)
        if self.words is not None:
            self.tasks.spawn(self._remote_increment(progress.word), f"remote search count for {progress.word!r}")
        return progress

    def _count_activity(self, profile_id: str, first_view: bool) -> None:
        profile = self.store.add_profile_counters(
            profile_id,
            xp=XP_PER_NEW_WORD if first_view else XP_PER_REVIEW,
            words_learned=1 if first_view else 0,
        )
        self.store.update_daily_activity(profile_id, self.clock().date())
        if profile is not None:
            self._schedule_push(profile)

    # ── Favorites / progress ───────────────────────────────────

    def toggle_favorite(self, profile_id: str, word: str) -> bool:
        """
        Flip the favorite flag. Favoriting a never-viewed word creates its
        progress row and is treated as that word's first view.
        """
        existed = self.store.get_progress(profile_id, word) is not None
        is_favorite = self.store.toggle_favorite(profile_id, word)
        if not existed:
            self._count_activity(profile_id, first_view=True)
        return is_favorite

    def get_favorite_words(self, profile_id: str) -> List[WordProgress]:
        return self.store.get_favorite_words(profile_id)

    def get_favorites_count(self, profile_id: str) -> int:
        return self.store.get_favorites_count(profile_id)

    def get_word_progress(self, profile_id: str) -> List[WordProgress]:
        return self.store.get_word_progress(profile_id)

    def get_daily_streak(self, profile_id: str) -> Optional[DailyStreak]:
        return self.store.get_daily_streak(profile_id)

    def update_daily_activity(self, profile_id: str) -> DailyStreak:
        return self.store.update_daily_activity(profile_id, self.clock().date())

    # ── Achievements ───────────────────────────────────────────

    def get_achievements(self) -> List[Achievement]:
        return self.store.get_achievements()

    def get_profile_achievements(self, profile_id: str) -> List[ProfileAchievement]:
        return self.store.get_profile_achievements(profile_id)

    def check_achievements(self, profile_id: str) -> List[Achievement]:
        """Unlock every achievement whose condition now holds; returns the newly unlocked ones."""
        profile = self.store.get_profile(profile_id)
        if profile is None:
            return []
        streak = self.store.get_daily_streak(profile_id)
        stats: Dict[str, int] = {
            "words_viewed": len(self.store.get_word_progress(profile_id)),
            "favorites": self.store.get_favorites_count(profile_id),
            "streak": streak.streak_count if streak else 0,
            "level": profile.current_level,
        }
        unlocked = {pa.achievement_id for pa in self.store.get_profile_achievements(profile_id)}

        newly: List[Achievement] = []
        for achievement in self.store.get_achievements():
            if achievement.id in unlocked:
                continue
            condition = achievement.unlock_condition
            kind = condition.get("type")
            if kind not in stats:
                continue
            threshold = condition.get("count", condition.get("days", condition.get("level", 0)))
            if stats[kind] >= threshold and self.store.unlock_achievement(profile_id, achievement.id):
                logger.info("Profile {} unlocked {}", profile_id, achievement.code)
                newly.append(achievement)
        return newly

    # ── Recent searches ────────────────────────────────────────

    def add_recent_search(self, profile_id: Optional[str], word: str) -> None:
        self.store.add_recent_search(profile_id, word)

    def get_recent_searches(self, profile_id: Optional[str], limit: int = 20) -> List[str]:
        return self.store.get_recent_searches(profile_id, limit)

    def clear_recent_searches(self, profile_id: Optional[str]) -> None:
        self.store.clear_recent_searches(profile_id)

    # ── Reconciliation ─────────────────────────────────────────

    def _schedule_push(self, profile: Profile) -> None:
        if self.sink is None:
            return
        # with no running loop the profile stays unsynced for the startup sweep
        self.tasks.spawn(self.push_profile(profile), f"push of profile {profile.id}")

    async def push_profile(self, profile: Profile) -> bool:
        """Push one profile; mark it synced only if it was not edited meanwhile."""
        if self.sink is None:
            return False
        try:
            await asyncio.wait_for(self.sink.upsert(profile), timeout=self.timeout)
        except (RemoteError, asyncio.TimeoutError) as e:
            logger.warning("Could not push profile {}: {}", profile.id, str(e) or "timed out")
            return False
        synced = self.store.mark_profile_synced(profile.id, profile.revision)
        if not synced:
            logger.debug("Profile {} changed during push; left unsynced", profile.id)
        return synced

    async def push_unsynced_profiles(self) -> int:
        """Retry every unsynced profile independently. Returns how many are now synced."""
        if self.sink is None:
            return 0
        pending = self.store.get_unsynced_profiles()
        if not pending:
            return 0
        results = await asyncio.gather(*(self.push_profile(p) for p in pending), return_exceptions=True)
        synced = 0
        for profile, result in zip(pending, results):
            if isinstance(result, BaseException):
                logger.opt(exception=result).warning("Push of profile {} failed", profile.id)
            elif result:
                synced += 1
        logger.info("Pushed {}/{} unsynced profiles", synced, len(pending))
        return synced

    async def _remote_delete(self, profile_id: str) -> None:
        assert self.sink is not None
        await asyncio.wait_for(self.sink.delete(profile_id), timeout=self.timeout)

    async def _remote_increment(self, word: str) -> None:
        assert self.words is not None
        await asyncio.wait_for(self.words.increment_search_count(word), timeout=self.timeout)
