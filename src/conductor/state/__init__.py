from conductor.state.content import LocalContentStore
from conductor.state.store import FileStore, MemoryStore, Store

__all__ = ["FileStore", "LocalContentStore", "MemoryStore", "Store"]
