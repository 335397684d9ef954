"""
Currently selected dataset, shared across pages of one session.
"""

from __future__ import annotations

import logging
from typing import Callable, List, Optional

from .errors import StorageError
from .storage import KeyValueStore

logger = logging.getLogger("uvicorn.error")

SELECTION_STORAGE_KEY = "lwa_selected_dataset"

SelectionCallback = Callable[[Optional[str]], None]


class SelectionManager:
    """Holds ``selected_dataset_id`` and notifies observers on distinct changes."""

    def __init__(self, session_store: KeyValueStore) -> None:
        self._store = session_store
        self._selected: Optional[str] = None
        self._callbacks: List[SelectionCallback] = []
        self._load()

    def _load(self) -> None:
        stored = self._store.get_item(SELECTION_STORAGE_KEY)
        if stored:
            self._selected = stored

    def _save(self) -> None:
        try:
            if self._selected:
                self._store.set_item(SELECTION_STORAGE_KEY, self._selected)
            else:
                self._store.remove_item(SELECTION_STORAGE_KEY)
        except StorageError:
            logger.exception("Error saving dataset selection")

    def get(self) -> Optional[str]:
        return self._selected

    def set(self, dataset_id: Optional[str]) -> None:
        previous = self._selected
        self._selected = dataset_id or None
        self._save()
        if previous != self._selected:
            self._notify(self._selected)

    def clear(self) -> None:
        self.set(None)

    def on_change(self, callback: SelectionCallback) -> Callable[[], None]:
        """Register an observer; returns a function that unregisters it."""
        self._callbacks.append(callback)

        def unsubscribe() -> None:
            if callback in self._callbacks:
                self._callbacks.remove(callback)

        return unsubscribe

    def _notify(self, dataset_id: Optional[str]) -> None:
        for callback in list(self._callbacks):
            try:
                callback(dataset_id)
            except Exception:
                logger.exception("Error in dataset selection callback")
