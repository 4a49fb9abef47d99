"""Infrastructure domain: database layer, keyed locks and event bus.

Note: ``tablesync.indexer`` is intentionally NOT re-exported here because it
orchestrates schema, archive and store concerns.  Import it directly::

    from tablesync.indexer import index_archive, unindex_archive
"""

from tablesync.infrastructure.db import (
    STORE_VERSION,
    IndexMeta,
    TableStore,
    create_schema,
    get_meta,
    open_db,
    set_meta,
)
from tablesync.infrastructure.events import EventBus
from tablesync.infrastructure.locks import KeyedLock

__all__ = [
    "STORE_VERSION",
    "EventBus",
    "IndexMeta",
    "KeyedLock",
    "TableStore",
    "create_schema",
    "get_meta",
    "open_db",
    "set_meta",
]
