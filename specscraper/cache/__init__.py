"""Entity storage and normalization of historical payloads."""

from .normalization import PASSES, derive_specs, run_pass
from .store import EntityStore, MemoryEntityStore, store_outcome

__all__ = [
    "PASSES",
    "derive_specs",
    "run_pass",
    "EntityStore",
    "MemoryEntityStore",
    "store_outcome",
]
