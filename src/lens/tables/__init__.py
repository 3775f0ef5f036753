"""Table backends — the storage side of every materialization."""

from lens.tables.base import Table, Row, KeyValue, key_of, normalize_keys
from lens.tables.memory import MemoryTable
from lens.tables.locks import RunLockRegistry, get_lock_registry


# Lazy import — only pulls in the async SQL stack when used
def sql_table(*args, **kwargs):
    from lens.tables.sql import SQLTable
    return SQLTable(*args, **kwargs)


__all__ = [
    "Table", "Row", "KeyValue", "key_of", "normalize_keys",
    "MemoryTable", "RunLockRegistry", "get_lock_registry", "sql_table",
]
