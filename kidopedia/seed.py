"""First-launch setup: load the bundled word list so the app works offline at once."""
import json
from importlib import resources
from typing import Any, Callable, List, Optional

from loguru import logger
from pydantic import ValidationError

from .db import LocalStore
from .exceptions import InputError
from .remote import CachedWordRow
from .structured import SyncProgress, WordRecord

SEED_BATCH_SIZE = 20
SETUP_COMPLETE_KEY = "initial_setup_complete"


def load_seed_file(path: Optional[str] = None) -> List[WordRecord]:
    """Read seed words from ``path`` or from the packaged ``data/seed_words.json``."""
    if path is None:
        raw = resources.files("kidopedia").joinpath("data/seed_words.json").read_text(encoding="utf-8")
    else:
        with open(path, encoding="utf-8") as f:
            raw = f.read()
    payload: Any = json.loads(raw)
    try:
        return [CachedWordRow.model_validate(item).to_record() for item in payload]
    except ValidationError as e:
        raise InputError(f"Invalid seed word file: {e}") from e


def is_initial_setup_complete(store: LocalStore) -> bool:
    return store.get_meta(SETUP_COMPLETE_KEY) == "true"


def load_seed_words(
    store: LocalStore,
    words: Optional[List[WordRecord]] = None,
    on_progress: Optional[Callable[[SyncProgress], None]] = None,
) -> int:
    """
    Insert seed words in atomic batches of 20 and mark setup complete.

    Does nothing once setup has completed. Returns the number of words written.
    """
    if is_initial_setup_complete(store):
        logger.debug("Initial setup already complete; skipping seed load")
        return 0
    records = words if words is not None else load_seed_file()
    total = len(records)
    written = 0
    for start in range(0, total, SEED_BATCH_SIZE):
        batch = records[start:start + SEED_BATCH_SIZE]
        written += store.upsert_words(batch)
        if on_progress:
            on_progress(SyncProgress(
                current=written,
                total=total,
                percentage=round(written * 100 / total) if total else 100,
                is_downloading=written < total,
                current_word=batch[-1].word if batch else None,
            ))
    store.set_meta(SETUP_COMPLETE_KEY, "true")
    logger.info("Loaded {} seed words", written)
    return written
