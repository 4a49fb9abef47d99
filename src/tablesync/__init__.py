"""tablesync - keep local SQLite tables in sync with versioned file archives."""

__version__ = "0.1.0"
