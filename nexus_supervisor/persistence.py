"""
Metrics persistence for the supervisor.

The supervisor hands plain records to a ``MetricsSink``; a sink only reports
success (return) or failure (raise). Two sinks are provided:

- ``LoggingMetricsSink`` logs the records
- ``SQLiteMetricsStore`` writes them to SQLite using aiosqlite
"""

import asyncio
from dataclasses import asdict, dataclass
from datetime import datetime
from pathlib import Path
from typing import List, Optional, Protocol, Sequence, Union

import aiosqlite

from .logger import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class MetricsRecord:
    """Snapshot of the worker's derived metrics."""

    cumulative_balance: float
    total_profit: float
    active_strategy_count: int
    deployed_artifact_count: int
    executed_trade_count: int
    core_engine_active: bool
    running: bool
    recorded_at: datetime


@dataclass(frozen=True)
class ArtifactRecord:
    """An artifact or agent the worker confirmed."""

    artifact_id: str
    kind: str  # "artifact" or "agent"
    confirmed_at: datetime


class MetricsSink(Protocol):
    async def save_metrics(self, record: MetricsRecord) -> None: ...

    async def save_artifacts(self, records: Sequence[ArtifactRecord]) -> None: ...


class LoggingMetricsSink:
    """Sink that only logs what it receives."""

    def __init__(self):
        self.metrics: List[MetricsRecord] = []
        self.artifacts: List[ArtifactRecord] = []

    async def save_metrics(self, record: MetricsRecord) -> None:
        self.metrics.append(record)
        fields = asdict(record)
        fields["recorded_at"] = record.recorded_at.isoformat()
        logger.info("Saving worker metrics", **fields)

    async def save_artifacts(self, records: Sequence[ArtifactRecord]) -> None:
        self.artifacts.extend(records)
        for record in records:
            logger.info("Saving artifact status", artifact_id=record.artifact_id, kind=record.kind)


class SQLiteMetricsStore:
    """Async SQLite sink for worker metrics and confirmed artifacts."""

    def __init__(self, db_path: Union[str, Path] = "nexus_metrics.db"):
        self.db_path = Path(db_path)
        self._conn: Optional[aiosqlite.Connection] = None
        self._lock = asyncio.Lock()

    async def initialize(self) -> None:
        """Open the connection and create tables if they don't exist."""
        async with self._lock:
            if self._conn is not None:
                return

            self.db_path.parent.mkdir(parents=True, exist_ok=True)
            conn = await aiosqlite.connect(self.db_path)
            await conn.execute("PRAGMA journal_mode=WAL")  # Better concurrent access

            await conn.execute(
                """
                CREATE TABLE IF NOT EXISTS worker_metrics (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    cumulative_balance REAL NOT NULL,
                    total_profit REAL NOT NULL,
                    active_strategy_count INTEGER NOT NULL,
                    deployed_artifact_count INTEGER NOT NULL,
                    executed_trade_count INTEGER NOT NULL,
                    core_engine_active INTEGER NOT NULL,
                    running INTEGER NOT NULL,
                    recorded_at TEXT NOT NULL
                )
            """
            )

            await conn.execute(
                """
                CREATE TABLE IF NOT EXISTS worker_artifacts (
                    artifact_id TEXT NOT NULL,
                    kind TEXT NOT NULL,
                    confirmed_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    PRIMARY KEY (artifact_id, kind)
                )
            """
            )

            await conn.commit()
            self._conn = conn
            logger.info("Metrics database initialized", db_path=str(self.db_path))

    async def close(self) -> None:
        async with self._lock:
            if self._conn is not None:
                await self._conn.close()
                self._conn = None
                logger.info("Closed metrics database connection")

    async def __aenter__(self):
        await self.initialize()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def _connection(self) -> aiosqlite.Connection:
        if self._conn is None:
            await self.initialize()
        return self._conn

    async def save_metrics(self, record: MetricsRecord) -> None:
        conn = await self._connection()
        await conn.execute(
            """
            INSERT INTO worker_metrics (
                cumulative_balance, total_profit, active_strategy_count,
                deployed_artifact_count, executed_trade_count, core_engine_active,
                running, recorded_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
        """,
            (
                record.cumulative_balance,
                record.total_profit,
                record.active_strategy_count,
                record.deployed_artifact_count,
                record.executed_trade_count,
                int(record.core_engine_active),
                int(record.running),
                record.recorded_at.isoformat(),
            ),
        )
        await conn.commit()

    async def save_artifacts(self, records: Sequence[ArtifactRecord]) -> None:
        if not records:
            return
        conn = await self._connection()
        now = datetime.now().isoformat()
        await conn.executemany(
            """
            INSERT INTO worker_artifacts (artifact_id, kind, confirmed_at, updated_at)
            VALUES (?, ?, ?, ?)
            ON CONFLICT(artifact_id, kind) DO UPDATE SET updated_at = excluded.updated_at
        """,
            [(r.artifact_id, r.kind, r.confirmed_at.isoformat(), now) for r in records],
        )
        await conn.commit()

    async def get_latest_metrics(self) -> Optional[MetricsRecord]:
        conn = await self._connection()
        cursor = await conn.execute(
            """
            SELECT cumulative_balance, total_profit, active_strategy_count,
                   deployed_artifact_count, executed_trade_count, core_engine_active,
                   running, recorded_at
            FROM worker_metrics ORDER BY id DESC LIMIT 1
        """
        )
        row = await cursor.fetchone()
        await cursor.close()
        if row is None:
            return None
        return MetricsRecord(
            cumulative_balance=row[0],
            total_profit=row[1],
            active_strategy_count=row[2],
            deployed_artifact_count=row[3],
            executed_trade_count=row[4],
            core_engine_active=bool(row[5]),
            running=bool(row[6]),
            recorded_at=datetime.fromisoformat(row[7]),
        )

    async def get_artifacts(self, kind: Optional[str] = None) -> List[ArtifactRecord]:
        conn = await self._connection()
        if kind is None:
            cursor = await conn.execute(
                "SELECT artifact_id, kind, confirmed_at FROM worker_artifacts ORDER BY artifact_id"
            )
        else:
            cursor = await conn.execute(
                "SELECT artifact_id, kind, confirmed_at FROM worker_artifacts "
                "WHERE kind = ? ORDER BY artifact_id",
                (kind,),
            )
        rows = await cursor.fetchall()
        await cursor.close()
        return [
            ArtifactRecord(artifact_id=r[0], kind=r[1], confirmed_at=datetime.fromisoformat(r[2]))
            for r in rows
        ]
