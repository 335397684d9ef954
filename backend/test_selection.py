"""
Tests for the session-scoped dataset selection manager.
"""

from core.selection import SELECTION_STORAGE_KEY, SelectionManager
from core.storage import MemoryKeyValueStore


def test_set_get_and_persist():
    store = MemoryKeyValueStore()
    manager = SelectionManager(store)
    assert manager.get() is None

    manager.set("ds_1")
    assert manager.get() == "ds_1"
    assert store.get_item(SELECTION_STORAGE_KEY) == "ds_1"
    assert SelectionManager(store).get() == "ds_1"


def test_clear_removes_key():
    store = MemoryKeyValueStore()
    manager = SelectionManager(store)
    manager.set("ds_1")
    manager.clear()
    assert manager.get() is None
    assert store.get_item(SELECTION_STORAGE_KEY) is None


def test_observers_fire_only_on_distinct_transitions():
    manager = SelectionManager(MemoryKeyValueStore())
    seen = []
    manager.on_change(seen.append)

    manager.set("ds_1")
    manager.set("ds_1")
    manager.set("ds_2")
    manager.clear()
    manager.clear()
    assert seen == ["ds_1", "ds_2", None]


def test_unsubscribe():
    manager = SelectionManager(MemoryKeyValueStore())
    seen = []
    unsubscribe = manager.on_change(seen.append)
    manager.set("ds_1")
    unsubscribe()
    unsubscribe()
    manager.set("ds_2")
    assert seen == ["ds_1"]


def test_failing_observer_does_not_break_chain(caplog):
    manager = SelectionManager(MemoryKeyValueStore())
    seen = []

    def broken(_):
        raise RuntimeError("observer failed")

    manager.on_change(broken)
    manager.on_change(seen.append)
    manager.set("ds_1")

    assert seen == ["ds_1"]
    assert "Error in dataset selection callback" in caplog.text


def test_storage_failure_keeps_in_memory_selection():
    manager = SelectionManager(MemoryKeyValueStore(quota_bytes=0))
    manager.set("ds_1")
    assert manager.get() == "ds_1"
