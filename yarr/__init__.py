"""Self-hosted feed reader core: SQLite storage, a WSGI JSON API, OPML and the Fever API."""

__version__ = "2.4"