"""The application's storage: one SQLite database holding every kind of record."""

from __future__ import annotations

from .database import Database
from .feeds import FeedsMixin, FoldersMixin, HTTPStatesMixin
from .items import ItemsMixin


class Storage(FeedsMixin, FoldersMixin, HTTPStatesMixin, ItemsMixin, Database):
    """Feeds, folders, items, HTTP states and settings in one database.

    Open with ``Storage(path)``, or ``Storage(path, db_fast=True)`` to work on
    an in-memory copy that is written back to ``path`` on close.
    """