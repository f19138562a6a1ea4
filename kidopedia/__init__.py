"""
Kidopedia

An offline-first, kid-safe dictionary: a local word store synced from a
remote corpus, with age-gated lookups and learner profiles.
"""

from . import content_filter
from . import db
from . import scheduler
from . import structured
from . import sync
from . import lookup
from . import profiles

__version__ = "0.1.0"
__all__ = ["content_filter", "db", "scheduler", "structured", "sync", "lookup", "profiles"]
