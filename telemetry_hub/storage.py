"""Durable storage for device records and telemetry samples."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import threading
from datetime import datetime, timezone
from typing import Iterator, List, Optional, Protocol

from sqlalchemy import (
    Column,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    create_engine,
    insert,
    select,
    update,
)
from sqlalchemy.engine import Engine
from sqlalchemy.pool import StaticPool

from .config import StorageConfig
from .models import DeviceRecord, DeviceStatus, TelemetrySample

LOGGER = logging.getLogger(__name__)

metadata = MetaData()

devices = Table(
    "devices",
    metadata,
    Column("id", String, primary_key=True),
    Column("name", String, nullable=False),
    Column("status", String, nullable=False, default=DeviceStatus.ONLINE.value),
    Column("last_seen", DateTime(timezone=True), nullable=False),
    Column("created_at", DateTime(timezone=True), nullable=False),
)

device_data = Table(
    "device_data",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("device_id", String, ForeignKey("devices.id"), nullable=False),
    Column("temperature", Float),
    Column("humidity", Float),
    Column("weight", Float),
    Column("battery", Float),
    Column("timestamp", DateTime(timezone=True), nullable=False),
    Index("idx_device_data_device_id", "device_id"),
    Index("idx_device_data_timestamp", "timestamp"),
)


class PersistenceGateway(Protocol):
    """Write-side contract consumed by the telemetry ingestor."""

    async def upsert_device_and_sample(self, sample: TelemetrySample) -> None:
        """Mark the device online and append the sample."""
        ...


class SQLTelemetryStore:
    """SQLAlchemy-backed :class:`PersistenceGateway`.

    Blocking database work runs in a worker thread so the event loop keeps
    serving broker traffic and websocket clients.
    """

    def __init__(
        self,
        url: str,
        *,
        echo: bool = False,
        engine: Optional[Engine] = None,
    ) -> None:
        self._engine = engine or _create_engine(url, echo=echo)
        self._is_sqlite = self._engine.dialect.name == "sqlite"
        # SQLite permits a single writer; serialise instead of waiting on its file lock.
        self._write_lock = threading.Lock()

    @classmethod
    def from_config(cls, config: StorageConfig) -> "SQLTelemetryStore":
        return cls(config.url, echo=config.echo)

    @property
    def engine(self) -> Engine:
        return self._engine

    def initialise(self) -> None:
        metadata.create_all(self._engine)
        LOGGER.info("Telemetry storage ready (%s)", self._engine.url.render_as_string())

    def close(self) -> None:
        self._engine.dispose()

    async def upsert_device_and_sample(self, sample: TelemetrySample) -> None:
        await asyncio.to_thread(self._write_sample, sample)

    async def get_device(self, device_id: str) -> Optional[DeviceRecord]:
        return await asyncio.to_thread(self._fetch_device, device_id)

    async def recent_samples(
        self, device_id: str, limit: int = 100
    ) -> List[TelemetrySample]:
        return await asyncio.to_thread(self._fetch_samples, device_id, limit)

    # ------------------------------------------------------------------
    # Blocking helpers
    # ------------------------------------------------------------------
    def _write_sample(self, sample: TelemetrySample) -> None:
        now = datetime.now(timezone.utc)
        with self._writer():
            with self._engine.begin() as conn:
                result = conn.execute(
                    update(devices)
                    .where(devices.c.id == sample.device_id)
                    .values(status=DeviceStatus.ONLINE.value, last_seen=now)
                )
                if result.rowcount == 0:
                    conn.execute(
                        insert(devices).values(
                            id=sample.device_id,
                            name=sample.device_id,
                            status=DeviceStatus.ONLINE.value,
                            last_seen=now,
                            created_at=now,
                        )
                    )
                conn.execute(
                    insert(device_data).values(
                        device_id=sample.device_id,
                        temperature=sample.temperature,
                        humidity=sample.humidity,
                        weight=sample.weight,
                        battery=sample.battery,
                        timestamp=sample.timestamp or now,
                    )
                )

    def _fetch_device(self, device_id: str) -> Optional[DeviceRecord]:
        with self._engine.connect() as conn:
            row = conn.execute(
                select(devices).where(devices.c.id == device_id)
            ).first()
        if row is None:
            return None
        return DeviceRecord(
            id=row.id,
            name=row.name,
            status=DeviceStatus(row.status),
            last_seen=_as_utc(row.last_seen),
            created_at=_as_utc(row.created_at),
        )

    def _fetch_samples(self, device_id: str, limit: int) -> List[TelemetrySample]:
        query = (
            select(device_data)
            .where(device_data.c.device_id == device_id)
            .order_by(device_data.c.timestamp.desc(), device_data.c.id.desc())
            .limit(limit)
        )
        with self._engine.connect() as conn:
            rows = conn.execute(query).all()
        return [
            TelemetrySample(
                device_id=row.device_id,
                temperature=row.temperature,
                humidity=row.humidity,
                weight=row.weight,
                battery=row.battery,
                timestamp=_as_utc(row.timestamp),
            )
            for row in rows
        ]

    @contextlib.contextmanager
    def _writer(self) -> Iterator[None]:
        if not self._is_sqlite:
            yield
            return
        with self._write_lock:
            yield


def _create_engine(url: str, *, echo: bool) -> Engine:
    if not url.startswith("sqlite"):
        return create_engine(url, echo=echo, pool_pre_ping=True, future=True)

    kwargs = {"connect_args": {"check_same_thread": False}}
    if url in ("sqlite://", "sqlite:///:memory:"):
        kwargs["poolclass"] = StaticPool
    return create_engine(url, echo=echo, future=True, **kwargs)


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value
