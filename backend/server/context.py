"""
Workbench context: the one owner of the stores, the query source and the
per-session selection managers for a running process.
"""

from __future__ import annotations

import logging
from typing import Dict, Optional

from app.query_source import QuerySource, SampleCatalog
from core.config import Settings, get_settings
from core.models import ChartConfig, ChartType, Visualization
from core.selection import SelectionManager
from core.storage import (
    DatasetStore,
    JsonFileKeyValueStore,
    KeyValueStore,
    MemoryKeyValueStore,
    MetricStore,
    VisualizationStore,
)
from server.debounce import Debouncer
from skills.build_chart import BuildResult, build_chart, build_visualization

logger = logging.getLogger("uvicorn.error")

DEFAULT_SESSION = "default"


class WorkbenchContext:
    def __init__(
        self,
        backing: KeyValueStore,
        settings: Optional[Settings] = None,
        query_source: Optional[QuerySource] = None,
    ) -> None:
        self.settings = settings or Settings()
        self.datasets = DatasetStore(backing)
        self.metrics = MetricStore(backing)
        self.visualizations = VisualizationStore(backing)
        self.query_source = query_source or QuerySource(
            SampleCatalog(rows=self.settings.sample_rows),
            latency_ms=self.settings.query_latency_ms,
        )
        self.debouncer = Debouncer(self.settings.debounce_ms)
        self._sessions: Dict[str, SelectionManager] = {}

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None) -> "WorkbenchContext":
        settings = settings or get_settings()
        if settings.storage_path:
            backing: KeyValueStore = JsonFileKeyValueStore(settings.storage_path)
            logger.info("Using JSON file storage: %s", settings.storage_path)
        else:
            backing = MemoryKeyValueStore()
            logger.info("Using in-memory storage")
        return cls(backing, settings)

    def selection(self, session_id: Optional[str] = None) -> SelectionManager:
        """Session-scoped selection manager (created on first use)."""
        sid = session_id or DEFAULT_SESSION
        if sid not in self._sessions:
            self._sessions[sid] = SelectionManager(MemoryKeyValueStore())
        return self._sessions[sid]

    def build_chart(
        self,
        chart_type: ChartType | str,
        config: ChartConfig,
        default_dataset_id: Optional[str] = None,
    ) -> BuildResult:
        return build_chart(chart_type, config, self.datasets.get, self.metrics.get, default_dataset_id)

    def build_visualization(self, viz: Visualization) -> BuildResult:
        return build_visualization(viz, self.datasets.get, self.metrics.get)
