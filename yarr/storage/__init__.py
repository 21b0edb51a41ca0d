"""SQLite-backed storage for folders, feeds, items, HTTP states and settings."""