"""
Holder for the live entity store and the current dimensional snapshot.

Re-materialization builds a complete new dimensional store first and only
then swaps the reference, so a query already running keeps reading the
snapshot it started with.
"""

from __future__ import annotations

import logging
import threading

from dimsim.etl.materialize import materialize
from dimsim.services.dimensional_store import DimensionalStore
from dimsim.services.entity_store import EntityStore

logger = logging.getLogger(__name__)


class StoreRegistry:
    def __init__(self, entity_store: EntityStore | None = None):
        self.entity_store = entity_store or EntityStore().create_schema()
        self._dimensional_store: DimensionalStore | None = None
        self._lock = threading.Lock()

    @property
    def dimensional_store(self) -> DimensionalStore | None:
        return self._dimensional_store

    def rematerialize(self) -> DimensionalStore:
        """Serialize materializations; readers are never blocked."""
        with self._lock:
            store = materialize(self.entity_store)
            self._dimensional_store = store
        logger.info("Dimensional snapshot swapped in")
        return store
