"""
Entity stores for datasets, metrics and visualizations.

Each store owns an in-memory map and rewrites one JSON snapshot (plus a
``<key>_nextId`` counter) in a key-value backing store after every
mutation. A failed snapshot rolls the in-memory change back and raises
StorageError.
"""

from __future__ import annotations

import copy
import json
import logging
import os
import tempfile
from typing import (
    Any,
    Dict,
    Generic,
    List,
    Mapping,
    NamedTuple,
    Optional,
    Protocol,
    Type,
    TypeVar,
)

from pydantic import ValidationError
from pydantic_core import PydanticSerializationError

from .errors import InvalidEntityError, StorageError
from .models import (
    CamelModel,
    ChartConfig,
    ChartType,
    Dataset,
    DisplayType,
    Metric,
    Visualization,
    utc_now_iso,
)

logger = logging.getLogger("uvicorn.error")

DATASETS_KEY = "lwa_datasets"
METRICS_KEY = "lwa_metrics"
VISUALIZATIONS_KEY = "lwa_visualizations"


# ---------------------------------------------------------------------------
# Backing key-value stores
# ---------------------------------------------------------------------------

class KeyValueStore(Protocol):
    def get_item(self, key: str) -> Optional[str]: ...

    def set_item(self, key: str, value: str) -> None: ...

    def remove_item(self, key: str) -> None: ...


class MemoryKeyValueStore:
    """Dict-backed store; ``quota_bytes`` caps the total size of all values."""

    def __init__(self, quota_bytes: Optional[int] = None) -> None:
        self._data: Dict[str, str] = {}
        self.quota_bytes = quota_bytes

    def get_item(self, key: str) -> Optional[str]:
        return self._data.get(key)

    def set_item(self, key: str, value: str) -> None:
        if self.quota_bytes is not None:
            used = sum(len(v) for k, v in self._data.items() if k != key)
            if used + len(value) > self.quota_bytes:
                raise StorageError(
                    f"Storage quota exceeded writing '{key}' ({used + len(value)} > {self.quota_bytes} bytes)"
                )
        self._data[key] = value

    def remove_item(self, key: str) -> None:
        self._data.pop(key, None)

    def keys(self) -> List[str]:
        return list(self._data.keys())


class JsonFileKeyValueStore:
    """Store persisted as a single JSON object on disk (atomic rewrite per write)."""

    def __init__(self, path: str) -> None:
        self.path = path
        self._data: Dict[str, str] = {}
        if os.path.exists(path):
            try:
                with open(path, "r", encoding="utf-8") as fh:
                    loaded = json.load(fh)
                if isinstance(loaded, dict):
                    self._data = {str(k): str(v) for k, v in loaded.items()}
                else:
                    logger.warning("Ignoring non-object storage file %s", path)
            except (OSError, ValueError):
                logger.exception("Could not read storage file %s; starting empty", path)

    def get_item(self, key: str) -> Optional[str]:
        return self._data.get(key)

    def set_item(self, key: str, value: str) -> None:
        updated = dict(self._data)
        updated[key] = value
        self._write(updated)
        self._data = updated

    def remove_item(self, key: str) -> None:
        if key not in self._data:
            return
        updated = dict(self._data)
        del updated[key]
        self._write(updated)
        self._data = updated

    def _write(self, data: Dict[str, str]) -> None:
        directory = os.path.dirname(os.path.abspath(self.path))
        try:
            os.makedirs(directory, exist_ok=True)
            fd, tmp_path = tempfile.mkstemp(dir=directory, suffix=".tmp")
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                json.dump(data, fh)
            os.replace(tmp_path, self.path)
        except OSError as exc:
            raise StorageError(f"Failed to write storage file {self.path}: {exc}") from exc


# ---------------------------------------------------------------------------
# Generic entity store
# ---------------------------------------------------------------------------

class DeleteResult(NamedTuple):
    deleted: bool
    entity: Optional[Any] = None


M = TypeVar("M", bound=CamelModel)


def _require_name(name: Any, label: str) -> str:
    if not isinstance(name, str) or not name.strip():
        raise InvalidEntityError(f"{label} name is required")
    return name.strip()


class EntityStore(Generic[M]):
    storage_key: str = ""
    id_prefix: str = ""
    model: Type[M]
    label: str = "Entity"
    # Fields a shallow-merge update may touch (python names).
    updatable: frozenset = frozenset()

    def __init__(self, backing: KeyValueStore) -> None:
        self._backing = backing
        self._items: Dict[str, M] = {}
        self._next_id = 1
        self._field_names = self._field_lookup()
        self._load()

    @property
    def counter_key(self) -> str:
        return f"{self.storage_key}_nextId"

    def _field_lookup(self) -> Dict[str, str]:
        lookup: Dict[str, str] = {}
        for name, info in self.model.model_fields.items():
            lookup[name] = name
            if info.alias:
                lookup[info.alias] = name
        return lookup

    # -- persistence -------------------------------------------------------

    def _load(self) -> None:
        raw = self._backing.get_item(self.storage_key)
        if raw:
            try:
                for item in json.loads(raw):
                    entity = self.model.model_validate(item)
                    self._items[entity.id] = entity
            except (ValueError, TypeError, ValidationError):
                logger.exception("Could not load %s snapshot; starting empty", self.storage_key)
                self._items.clear()

        raw_next = self._backing.get_item(self.counter_key)
        if raw_next:
            try:
                self._next_id = int(raw_next)
            except ValueError:
                logger.warning("Ignoring invalid counter %s=%r", self.counter_key, raw_next)

        # Never hand out an id that is already taken.
        for entity_id in self._items:
            suffix = entity_id[len(self.id_prefix):]
            if entity_id.startswith(self.id_prefix) and suffix.isdigit():
                self._next_id = max(self._next_id, int(suffix) + 1)

    def _flush(self) -> None:
        try:
            payload = json.dumps([entity.dump() for entity in self._items.values()])
        except (TypeError, ValueError, PydanticSerializationError) as exc:
            raise StorageError(f"Failed to serialize {self.storage_key}: {exc}") from exc

        previous = {key: self._backing.get_item(key) for key in (self.storage_key, self.counter_key)}
        try:
            self._backing.set_item(self.storage_key, payload)
            self._backing.set_item(self.counter_key, str(self._next_id))
        except StorageError:
            self._restore_backing(previous)
            raise
        logger.debug(
            "Saved %s snapshot: count=%d bytes=%d next_id=%d",
            self.storage_key, len(self._items), len(payload), self._next_id,
        )

    def _restore_backing(self, previous: Dict[str, Optional[str]]) -> None:
        """Put the snapshot and counter back to their values before a failed flush."""
        for key, value in previous.items():
            try:
                if value is None:
                    self._backing.remove_item(key)
                else:
                    self._backing.set_item(key, value)
            except StorageError:
                logger.exception("Could not restore %s after a failed write", key)

    def _commit(self, entity_id: str, previous: Optional[M]) -> None:
        """Flush the snapshot, restoring ``previous`` for ``entity_id`` on failure."""
        try:
            self._flush()
        except StorageError:
            if previous is None:
                self._items.pop(entity_id, None)
            else:
                self._items[entity_id] = previous
            logger.error("Rolled back %s %s after storage failure", self.label.lower(), entity_id)
            raise

    def _allocate_id(self) -> str:
        entity_id = f"{self.id_prefix}{self._next_id}"
        self._next_id += 1
        return entity_id

    def _insert(self, entity: M) -> M:
        self._items[entity.id] = entity
        self._commit(entity.id, None)
        logger.info("%s created: id=%s", self.label, entity.id)
        return entity.model_copy(deep=True)

    def _build(self, data: Dict[str, Any]) -> M:
        try:
            return self.model.model_validate(data)
        except ValidationError as exc:
            raise InvalidEntityError(f"Invalid {self.label.lower()}: {exc}") from exc

    # -- reads -------------------------------------------------------------

    def get(self, entity_id: str) -> Optional[M]:
        entity = self._items.get(entity_id)
        return entity.model_copy(deep=True) if entity is not None else None

    def get_all(self) -> List[M]:
        return [entity.model_copy(deep=True) for entity in self._items.values()]

    def exists(self, entity_id: str) -> bool:
        return entity_id in self._items

    def __len__(self) -> int:
        return len(self._items)

    # -- writes ------------------------------------------------------------

    def _prepare_update(self, current: M, changes: Dict[str, Any]) -> Dict[str, Any]:
        """Hook: return the merged field dict (python names) for an update."""
        merged = current.model_dump()
        merged.update(changes)
        return merged

    def update(self, entity_id: str, changes: Mapping[str, Any]) -> Optional[M]:
        """Shallow-merge ``changes`` into the entity; unknown fields are ignored."""
        current = self._items.get(entity_id)
        if current is None:
            logger.warning("%s not found for update: id=%s", self.label, entity_id)
            return None

        accepted: Dict[str, Any] = {}
        for key, value in (changes or {}).items():
            name = self._field_names.get(key)
            if name in self.updatable:
                accepted[name] = value

        merged = self._prepare_update(current, accepted)
        merged["updated_at"] = utc_now_iso()
        updated = self._build(merged)

        self._items[entity_id] = updated
        self._commit(entity_id, current)
        logger.info("%s updated: id=%s fields=%s", self.label, entity_id, sorted(accepted))
        return updated.model_copy(deep=True)

    def delete(self, entity_id: str) -> DeleteResult:
        entity = self._items.pop(entity_id, None)
        if entity is None:
            logger.warning("%s not found for delete: id=%s", self.label, entity_id)
            return DeleteResult(deleted=False)
        self._commit(entity_id, entity)
        logger.info("%s deleted: id=%s", self.label, entity_id)
        return DeleteResult(deleted=True, entity=entity)


class DatasetScopedStore(EntityStore[M]):
    def get_by_dataset(self, dataset_id: str) -> List[M]:
        return [
            entity.model_copy(deep=True)
            for entity in self._items.values()
            if getattr(entity, "dataset_id", None) == dataset_id
        ]


# ---------------------------------------------------------------------------
# Datasets
# ---------------------------------------------------------------------------

def normalize_table(columns: Any, rows: Any) -> tuple[List[str], List[List[Any]]]:
    """Validate columns/rows and pad short rows with None."""
    if not isinstance(columns, (list, tuple)):
        raise InvalidEntityError("Columns must be a sequence")
    if not isinstance(rows, (list, tuple)):
        raise InvalidEntityError("Rows must be a sequence")

    names = [str(c) for c in columns]
    seen = set()
    for name in names:
        if name in seen:
            raise InvalidEntityError(f'Duplicate column name "{name}"')
        seen.add(name)

    width = len(names)
    out: List[List[Any]] = []
    for index, row in enumerate(rows):
        if not isinstance(row, (list, tuple)):
            raise InvalidEntityError(f"Row {index} must be a sequence")
        if len(row) > width:
            raise InvalidEntityError(
                f"Row {index} has {len(row)} cells but the dataset has {width} columns"
            )
        cells = list(row)
        cells.extend([None] * (width - len(cells)))
        out.append(cells)
    return names, out


class DatasetStore(EntityStore[Dataset]):
    storage_key = DATASETS_KEY
    id_prefix = "ds_"
    model = Dataset
    label = "Dataset"
    updatable = frozenset({"name", "sql", "columns", "rows", "access_control"})

    def create(self, name: str, sql: Optional[str], columns: Any, rows: Any) -> Dataset:
        clean_name = _require_name(name, self.label)
        names, table = normalize_table(columns, rows)
        dataset = self._build({
            "id": self._allocate_id(),
            "name": clean_name,
            "sql": sql or "",
            "columns": names,
            "rows": table,
        })
        logger.info(
            "Creating dataset: name=%s columns=%d rows=%d",
            clean_name[:50], len(names), len(table),
        )
        return self._insert(dataset)

    def _prepare_update(self, current: Dataset, changes: Dict[str, Any]) -> Dict[str, Any]:
        merged = super()._prepare_update(current, changes)
        if "name" in changes:
            merged["name"] = _require_name(changes["name"], self.label)
        if "columns" in changes or "rows" in changes:
            merged["columns"], merged["rows"] = normalize_table(merged["columns"], merged["rows"])
        return merged

    def duplicate(self, dataset_id: str, new_name: str) -> Optional[Dataset]:
        original = self._items.get(dataset_id)
        if original is None:
            return None
        duplicated = self.create(new_name, original.sql, list(original.columns), copy.deepcopy(original.rows))
        if original.access_control:
            return self.update(duplicated.id, {"access_control": copy.deepcopy(original.access_control)})
        return duplicated


# ---------------------------------------------------------------------------
# Metrics
# ---------------------------------------------------------------------------

class MetricStore(DatasetScopedStore[Metric]):
    storage_key = METRICS_KEY
    id_prefix = "metric_"
    model = Metric
    label = "Metric"
    updatable = frozenset({
        "name", "value", "operation", "column", "expression",
        "display_type", "decimal_places", "dataset_id",
    })

    def create(
        self,
        dataset_id: Optional[str],
        name: str,
        value: Any = None,
        operation: Optional[str] = None,
        column: Optional[str] = None,
        expression: Optional[str] = None,
        display_type: DisplayType | str = DisplayType.numeric,
        decimal_places: Optional[int] = 2,
    ) -> Metric:
        metric = self._build({
            "id": self._allocate_id(),
            "dataset_id": dataset_id,
            "name": _require_name(name, self.label),
            "value": value,
            "operation": operation,
            "column": column,
            "expression": expression,
            "display_type": display_type or DisplayType.numeric,
            "decimal_places": 2 if decimal_places is None else decimal_places,
        })
        return self._insert(metric)

    def _prepare_update(self, current: Metric, changes: Dict[str, Any]) -> Dict[str, Any]:
        merged = super()._prepare_update(current, changes)
        if "name" in changes:
            merged["name"] = _require_name(changes["name"], self.label)
        if "display_type" in changes and not changes["display_type"]:
            merged["display_type"] = DisplayType.numeric
        if "decimal_places" in changes and changes["decimal_places"] is None:
            merged["decimal_places"] = 2
        return merged

    def update_value(self, metric_id: str, value: Any, executed_at: Optional[str] = None) -> Optional[Metric]:
        """Store a freshly computed value and stamp ``executedAt``."""
        current = self._items.get(metric_id)
        if current is None:
            return None
        updated = current.model_copy(update={"value": value, "executed_at": executed_at or utc_now_iso()})
        self._items[metric_id] = updated
        self._commit(metric_id, current)
        return updated.model_copy(deep=True)

    def update_formatting(
        self, metric_id: str, display_type: Optional[str], decimal_places: Optional[int],
    ) -> Optional[Metric]:
        return self.update(metric_id, {"display_type": display_type, "decimal_places": decimal_places})


# ---------------------------------------------------------------------------
# Visualizations
# ---------------------------------------------------------------------------

class VisualizationStore(DatasetScopedStore[Visualization]):
    storage_key = VISUALIZATIONS_KEY
    id_prefix = "viz_"
    model = Visualization
    label = "Visualization"
    updatable = frozenset({"name", "chart_type", "config", "dataset_id"})

    def create(
        self,
        name: str,
        chart_type: ChartType | str,
        config: ChartConfig | Mapping[str, Any] | None = None,
        dataset_id: Optional[str] = None,
    ) -> Visualization:
        if not chart_type:
            raise InvalidEntityError("Visualization type is required")
        if isinstance(config, ChartConfig):
            config = config.model_dump()
        viz = self._build({
            "id": self._allocate_id(),
            "name": _require_name(name, self.label),
            "chart_type": chart_type,
            "config": dict(config or {}),
            "dataset_id": dataset_id,
        })
        return self._insert(viz)

    def _prepare_update(self, current: Visualization, changes: Dict[str, Any]) -> Dict[str, Any]:
        merged = super()._prepare_update(current, changes)
        if "name" in changes:
            merged["name"] = _require_name(changes["name"], self.label)
        if "config" in changes:
            incoming = changes["config"]
            if isinstance(incoming, ChartConfig):
                incoming = incoming.model_dump(exclude_unset=True)
            config = current.config.model_dump()
            lookup = {info.alias or name: name for name, info in ChartConfig.model_fields.items()}
            for key, value in dict(incoming or {}).items():
                config[lookup.get(key, key)] = value
            merged["config"] = config
        return merged

    def duplicate(self, viz_id: str, new_name: str) -> Optional[Visualization]:
        original = self._items.get(viz_id)
        if original is None:
            return None
        return self.create(new_name, original.chart_type, original.config.model_copy(deep=True), original.dataset_id)
