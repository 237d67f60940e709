"""Tests for the metrics sinks."""

from datetime import datetime

import pytest

from nexus_supervisor.persistence import (
    ArtifactRecord,
    LoggingMetricsSink,
    MetricsRecord,
    SQLiteMetricsStore,
)


def _metrics(balance=1.5, trades=2, recorded_at=None):
    return MetricsRecord(
        cumulative_balance=balance,
        total_profit=max(balance, 0.0),
        active_strategy_count=1,
        deployed_artifact_count=3,
        executed_trade_count=trades,
        core_engine_active=True,
        running=True,
        recorded_at=recorded_at or datetime(2024, 6, 1, 12, 0, 0),
    )


class TestSQLiteMetricsStore:
    @pytest.mark.asyncio
    async def test_save_and_read_latest_metrics(self, tmp_path):
        async with SQLiteMetricsStore(tmp_path / "metrics.db") as store:
            assert await store.get_latest_metrics() is None

            await store.save_metrics(_metrics(balance=1.0, trades=1))
            latest = _metrics(balance=2.5, trades=4, recorded_at=datetime(2024, 6, 1, 12, 5))
            await store.save_metrics(latest)

            assert await store.get_latest_metrics() == latest

    @pytest.mark.asyncio
    async def test_artifacts_are_upserted(self, tmp_path):
        confirmed = datetime(2024, 6, 1, 12, 0, 0)
        async with SQLiteMetricsStore(tmp_path / "metrics.db") as store:
            await store.save_artifacts(
                [
                    ArtifactRecord("T1", "artifact", confirmed),
                    ArtifactRecord("A1", "agent", confirmed),
                ]
            )
            # Saving the same artifact again keeps one row
            await store.save_artifacts([ArtifactRecord("T1", "artifact", confirmed)])
            await store.save_artifacts([])

            artifacts = await store.get_artifacts()
            assert [(a.artifact_id, a.kind) for a in artifacts] == [
                ("A1", "agent"),
                ("T1", "artifact"),
            ]
            agents = await store.get_artifacts(kind="agent")
            assert agents == [ArtifactRecord("A1", "agent", confirmed)]

    @pytest.mark.asyncio
    async def test_data_survives_reopen(self, tmp_path):
        db_path = tmp_path / "nested" / "metrics.db"
        record = _metrics()

        async with SQLiteMetricsStore(db_path) as store:
            await store.save_metrics(record)

        store = SQLiteMetricsStore(db_path)
        try:
            # Connection is opened lazily
            assert await store.get_latest_metrics() == record
        finally:
            await store.close()


class TestLoggingMetricsSink:
    @pytest.mark.asyncio
    async def test_records_are_kept(self):
        sink = LoggingMetricsSink()
        record = _metrics()
        artifact = ArtifactRecord("T1", "artifact", datetime(2024, 6, 1))

        await sink.save_metrics(record)
        await sink.save_artifacts([artifact])

        assert sink.metrics == [record]
        assert sink.artifacts == [artifact]
