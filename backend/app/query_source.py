# backend/app/query_source.py
"""
Sample catalog and SQL query source.

The catalog is a handful of deterministic laboratory tables generated with
numpy. Queries run through an in-memory SQLite connection that pandas loads
the catalog into; results come back as ``QueryResult{columns, rows}``.
"""

from __future__ import annotations

import asyncio
import logging
import sqlite3
import time
from typing import Dict, List, Optional

import numpy as np
import pandas as pd

from core.errors import WorkbenchError
from core.models import QueryResult
from core.utils import df_to_rows_safe

logger = logging.getLogger("uvicorn.error")

SEED = 20240101

SAMPLE_TYPES = ["Blood", "Urine", "Tissue", "Saliva", "Plasma"]
STATUSES = ["Pending", "In Progress", "Completed", "Rejected"]
LAB_IDS = ["LAB001", "LAB002", "LAB003"]
TEST_CATALOG = [
    ("Glucose", "Chemistry", "Enzymatic", "mg/dL", "70-100"),
    ("Hemoglobin", "Hematology", "Spectrophotometry", "g/dL", "12-17"),
    ("Cholesterol", "Chemistry", "Enzymatic", "mg/dL", "125-200"),
    ("Creatinine", "Chemistry", "Jaffe", "mg/dL", "0.6-1.2"),
    ("WBC Count", "Hematology", "Flow Cytometry", "10^3/uL", "4.5-11"),
    ("Platelets", "Hematology", "Impedance", "10^3/uL", "150-400"),
    ("Sodium", "Electrolytes", "ISE", "mmol/L", "135-145"),
    ("Potassium", "Electrolytes", "ISE", "mmol/L", "3.5-5.1"),
]


class QueryError(WorkbenchError):
    """The query source could not execute a statement."""


class SampleCatalog:
    """Deterministic sample tables keyed by name."""

    DESCRIPTIONS = {
        "samples": "Laboratory sample records",
        "tests": "Available test types and methods",
        "results": "Test results linked to samples",
    }

    def __init__(self, rows: int = 250, seed: int = SEED) -> None:
        self.tables: Dict[str, pd.DataFrame] = self._generate(max(1, rows), seed)

    @staticmethod
    def _generate(n: int, seed: int) -> Dict[str, pd.DataFrame]:
        rng = np.random.default_rng(seed)
        start = pd.Timestamp("2024-01-01")

        collected = start + pd.to_timedelta(rng.integers(0, 365, size=n), unit="D")
        samples = pd.DataFrame({
            "sample_id": [f"S{i:05d}" for i in range(1, n + 1)],
            "sample_name": [f"Sample {i}" for i in range(1, n + 1)],
            "sample_type": rng.choice(SAMPLE_TYPES, size=n),
            "collection_date": collected.strftime("%Y-%m-%d"),
            "status": rng.choice(STATUSES, size=n, p=[0.2, 0.2, 0.5, 0.1]),
            "lab_id": rng.choice(LAB_IDS, size=n),
        })

        tests = pd.DataFrame(
            [
                (f"T{i:03d}", name, kind, method, unit, ref)
                for i, (name, kind, method, unit, ref) in enumerate(TEST_CATALOG, start=1)
            ],
            columns=["test_id", "test_name", "test_type", "method", "unit", "reference_range"],
        )

        m = n * 2
        sample_idx = rng.integers(0, n, size=m)
        offsets = rng.integers(0, 14, size=m)
        results = pd.DataFrame({
            "result_id": [f"R{i:06d}" for i in range(1, m + 1)],
            "sample_id": samples["sample_id"].to_numpy()[sample_idx],
            "test_id": rng.choice(tests["test_id"].to_numpy(), size=m),
            "result_value": np.round(rng.normal(100, 25, size=m), 2),
            "result_date": (collected[sample_idx] + pd.to_timedelta(offsets, unit="D")).strftime("%Y-%m-%d"),
            "technician_id": [f"TECH{v:03d}" for v in rng.integers(1, 9, size=m)],
            "status": rng.choice(["Final", "Preliminary", "Corrected"], size=m, p=[0.8, 0.15, 0.05]),
        })

        return {"samples": samples, "tests": tests, "results": results}

    def list_tables(self) -> List[Dict[str, object]]:
        return [
            {
                "name": name,
                "columns": list(df.columns),
                "rows": int(len(df)),
                "description": self.DESCRIPTIONS.get(name, ""),
            }
            for name, df in self.tables.items()
        ]


class QuerySource:
    """Runs SQL against a SampleCatalog."""

    def __init__(self, catalog: SampleCatalog, latency_ms: int = 0) -> None:
        self.catalog = catalog
        self.latency_ms = latency_ms

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(":memory:")
        for name, df in self.catalog.tables.items():
            df.to_sql(name, conn, index=False)
        return conn

    def execute(self, sql: str) -> QueryResult:
        if not isinstance(sql, str) or not sql.strip():
            raise QueryError("Query is required")

        t0 = time.time()
        conn = self._connect()
        try:
            df = pd.read_sql_query(sql, conn)
        except (pd.errors.DatabaseError, sqlite3.Error) as exc:
            raise QueryError(f"Query failed: {exc}") from exc
        finally:
            conn.close()

        result = QueryResult(columns=[str(c) for c in df.columns], rows=df_to_rows_safe(df))
        logger.info(
            "Query executed: rows=%d cols=%d elapsed=%.3fs sql=%s",
            len(result.rows), len(result.columns), time.time() - t0, sql.strip()[:80],
        )
        return result

    async def run(self, sql: str, latency_ms: Optional[int] = None) -> QueryResult:
        """Async form of :meth:`execute` (worker thread, optional latency)."""
        delay = self.latency_ms if latency_ms is None else latency_ms
        if delay:
            await asyncio.sleep(delay / 1000)
        return await asyncio.to_thread(self.execute, sql)
