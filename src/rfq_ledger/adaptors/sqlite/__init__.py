from .factory import sqlite_object_store
from .store import SQLiteObjectStore, compute_etag

__all__ = ["sqlite_object_store", "SQLiteObjectStore", "compute_etag"]
