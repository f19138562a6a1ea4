"""
Composition root: one LocalStore per process, handed to every component.
"""
from dataclasses import dataclass, field
from typing import Callable, Optional

from loguru import logger

from .background import BackgroundTasks
from .config import Settings
from .db import LocalStore
from .exceptions import SyncFailedError
from .lookup import LookupChain
from .profiles import ProfileService
from .remote import (
    DictionaryLookup, HttpDictionaryLookup, HttpProfileSink, HttpWordSource, ProfileSink, RestTransport,
    WordSource,
)
from .seed import is_initial_setup_complete, load_seed_words
from .sync import SyncOrchestrator


@dataclass
class Runtime:
    settings: Settings
    store: LocalStore
    profiles: ProfileService
    lookup: LookupChain
    sync: SyncOrchestrator
    transport: Optional[RestTransport] = None
    tasks: BackgroundTasks = field(default_factory=BackgroundTasks)

    async def startup(self, run_sync: bool = True) -> None:
        """
        App launch sequence:
          1. create the schema if needed
          2. load seed words on first launch
          3. retry unsynced profiles in the background
          4. start a background sync when one is due
        """
        self.store.init_db()
        if not is_initial_setup_complete(self.store):
            load_seed_words(self.store)
        if self.profiles.sink is not None:
            self.tasks.spawn(self.profiles.push_unsynced_profiles(), "startup profile push")
        if run_sync and self.sync.source is not None and self.sync.is_sync_needed():
            self.tasks.spawn(self._background_sync(), "startup word sync")

    async def _background_sync(self) -> None:
        try:
            await self.sync.start_sync()
        except SyncFailedError as e:
            # state is already persisted as failed
            logger.warning("Background sync failed: {}", e)

    async def shutdown(self) -> None:
        self.sync.cancel_sync()
        await self.tasks.drain()
        if self.transport is not None:
            await self.transport.aclose()
        self.store.close()


def build_runtime(
    settings: Settings,
    store: Optional[LocalStore] = None,
    source: Optional[WordSource] = None,
    sink: Optional[ProfileSink] = None,
    dictionary: Optional[DictionaryLookup] = None,
    online: Optional[Callable[[], bool]] = None,
) -> Runtime:
    """Wire the components. Without a remote URL (and no injected collaborators) everything runs offline."""
    store = store or LocalStore(settings.db_path)
    tasks = BackgroundTasks()
    transport = None
    if not settings.offline and source is None and sink is None and dictionary is None:
        transport = RestTransport(settings.remote_url or "", settings.api_key, timeout=settings.remote_timeout)
        source = HttpWordSource(transport)
        sink = HttpProfileSink(transport)
        dictionary = HttpDictionaryLookup(transport, timeout=settings.lookup_timeout)

    profiles = ProfileService(
        store, sink=sink, words=source, default_age=settings.default_age, timeout=settings.remote_timeout,
        tasks=tasks,
    )
    lookup = LookupChain(
        store,
        source=source,
        dictionary=dictionary,
        age_provider=profiles.viewer_age,
        online=online or (lambda: True),
        remote_timeout=settings.remote_timeout,
        lookup_timeout=settings.lookup_timeout,
        tasks=tasks,
    )
    sync = SyncOrchestrator(store, source, timeout=settings.remote_timeout)
    return Runtime(settings, store, profiles, lookup, sync, transport, tasks)
