"""Device registries binding device identifiers to their secret keys."""

from __future__ import annotations

import threading
from datetime import datetime, timezone
from typing import Optional, Protocol, runtime_checkable

import structlog
from redis.asyncio import Redis, from_url as redis_from_url
from sqlalchemy import Column, DateTime, MetaData, String, Table, insert, select
from sqlalchemy.engine.url import make_url
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker, create_async_engine

LOGGER = structlog.get_logger("tokenvend.registry")


@runtime_checkable
class DeviceRegistry(Protocol):
    async def register(self, identifier: str, secret_key: str) -> bool:
        """Bind ``identifier`` to ``secret_key`` unless it is already bound."""

    async def lookup_key(self, identifier: str) -> Optional[str]:
        """Return the registered key, or None for an unknown device."""

    async def close(self) -> None:
        """Release backend resources."""


class InMemoryDeviceRegistry:
    """Per-process registry, suitable for tests and single-instance deployments."""

    def __init__(self) -> None:
        self._keys: dict[str, str] = {}
        self._lock = threading.Lock()

    async def register(self, identifier: str, secret_key: str) -> bool:
        with self._lock:
            if identifier in self._keys:
                return False
            self._keys[identifier] = secret_key
            return True

    async def lookup_key(self, identifier: str) -> Optional[str]:
        with self._lock:
            return self._keys.get(identifier)

    async def close(self) -> None:
        return None

    def __len__(self) -> int:
        with self._lock:
            return len(self._keys)


metadata = MetaData()

devices_table = Table(
    "devices",
    metadata,
    Column("uid", String(length=128), primary_key=True),
    Column("secret_key", String(length=128), nullable=False),
    Column("registered_at", DateTime(timezone=True), nullable=False),
)


def create_engine(database_url: str) -> AsyncEngine:
    url = make_url(database_url)
    engine_kwargs: dict[str, object] = {
        "future": True,
        "echo": False,
        "pool_pre_ping": True,
    }
    if url.get_backend_name() != "sqlite":
        engine_kwargs.update(
            {
                "pool_size": 10,
                "max_overflow": 20,
                "pool_timeout": 30,
                "pool_recycle": 1800,
            }
        )
    return create_async_engine(database_url, **engine_kwargs)


class SqlDeviceRegistry:
    """Registry stored in a relational table keyed by device identifier.

    Atomicity of register-if-absent comes from the primary key constraint.
    """

    def __init__(self, engine: AsyncEngine) -> None:
        self._engine = engine
        self._session_factory = async_sessionmaker(engine, expire_on_commit=False)

    @classmethod
    def from_url(cls, database_url: str) -> "SqlDeviceRegistry":
        return cls(create_engine(database_url))

    async def ensure_schema(self) -> None:
        async with self._engine.begin() as conn:
            await conn.run_sync(metadata.create_all)

    async def register(self, identifier: str, secret_key: str) -> bool:
        stmt = insert(devices_table).values(
            uid=identifier,
            secret_key=secret_key,
            registered_at=datetime.now(timezone.utc),
        )
        async with self._session_factory() as session:
            try:
                await session.execute(stmt)
                await session.commit()
            except IntegrityError:
                await session.rollback()
                return False
        return True

    async def lookup_key(self, identifier: str) -> Optional[str]:
        stmt = select(devices_table.c.secret_key).where(devices_table.c.uid == identifier)
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            return result.scalar_one_or_none()

    async def close(self) -> None:
        await self._engine.dispose()


class RedisDeviceRegistry:
    """Registry stored as one Redis string per device, written with SET NX."""

    def __init__(self, redis: Redis, *, prefix: str = "tokenvend:device:") -> None:
        self._redis = redis
        self._prefix = prefix

    @classmethod
    def from_url(cls, redis_url: str) -> "RedisDeviceRegistry":
        return cls(redis_from_url(redis_url, decode_responses=True))

    def _key(self, identifier: str) -> str:
        return f"{self._prefix}{identifier}"

    async def register(self, identifier: str, secret_key: str) -> bool:
        created = await self._redis.set(self._key(identifier), secret_key, nx=True)
        return bool(created)

    async def lookup_key(self, identifier: str) -> Optional[str]:
        value = await self._redis.get(self._key(identifier))
        if value is None:
            return None
        if isinstance(value, bytes):
            return value.decode("utf-8")
        return str(value)

    async def close(self) -> None:
        await self._redis.aclose()


async def build_device_registry(url: str) -> DeviceRegistry:
    """Create the registry backend named by ``url``.

    ``memory://`` keeps devices in process, ``redis://``/``rediss://`` use
    Redis, anything else is handed to SQLAlchemy as an async database URL.
    """

    scheme = url.split("://", 1)[0].lower() if "://" in url else ""
    if scheme == "memory":
        LOGGER.info("Using in-memory device registry")
        return InMemoryDeviceRegistry()
    if scheme in {"redis", "rediss", "unix"}:
        LOGGER.info("Using Redis device registry")
        return RedisDeviceRegistry.from_url(url)
    registry = SqlDeviceRegistry.from_url(url)
    try:
        await registry.ensure_schema()
    except Exception:
        await registry.close()
        raise
    LOGGER.info("Using SQL device registry", backend=make_url(url).get_backend_name())
    return registry
