import asyncio
import json
import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

import asyncpg

from api.metrics import metrics
from strategy.errors import StatePersistenceFailed
from strategy.monitoring_state import TickerState


logger = logging.getLogger(__name__)

STATE_FIELDS = ('ladder', 'last_bar', 'monitoring')


def _serialize_field(name: str, value: Any) -> Optional[Dict[str, Any]]:
    if name not in STATE_FIELDS:
        raise KeyError(f"Unknown ticker state field '{name}'")
    if value is None:
        return None
    return value.to_dict()


class TickerStateStore(ABC):
    """Per-symbol state records with serialized read-modify-write.

    Callers hold ``lock(symbol)`` around a read, decide, act, write sequence.
    Locks are per symbol and never shared across symbols.
    """

    def __init__(self, write_retries: int = 3, retry_backoff_s: float = 0.5):
        self.write_retries = max(1, int(write_retries))
        self.retry_backoff_s = max(0.0, float(retry_backoff_s))
        self._locks: Dict[str, asyncio.Lock] = {}

    def lock(self, symbol: str) -> asyncio.Lock:
        lock = self._locks.get(symbol)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[symbol] = lock
        return lock

    async def initialize(self) -> None:
        return None

    async def close(self) -> None:
        return None

    async def get(self, symbol: str) -> Optional[TickerState]:
        payload = await self._read(symbol)
        if payload is None:
            return None
        return TickerState.from_dict(payload)

    async def all(self) -> List[TickerState]:
        return [TickerState.from_dict(payload) for payload in await self._read_all()]

    async def save(self, state: TickerState) -> None:
        """Upsert the full record, retrying before raising ``StatePersistenceFailed``."""
        payload = state.to_dict()
        payload.pop('phase', None)
        await self._with_retries(state.symbol, 'save', self._write, state.symbol, payload)

    async def set_fields(self, symbol: str, **fields: Any) -> bool:
        """`$set`-style partial update. Returns False when no record exists for ``symbol``."""
        serialized = {name: _serialize_field(name, value) for name, value in fields.items()}
        return await self._with_retries(symbol, 'set_fields', self._write_fields, symbol, serialized)

    async def _with_retries(self, symbol: str, action: str, func, *args):
        last_error: Optional[Exception] = None
        for attempt in range(1, self.write_retries + 1):
            try:
                return await func(*args)
            except Exception as exc:
                last_error = exc
                logger.warning(
                    "%s state %s failed (attempt %s/%s): %s",
                    symbol, action, attempt, self.write_retries, exc,
                )
                if attempt < self.write_retries and self.retry_backoff_s:
                    await asyncio.sleep(self.retry_backoff_s * attempt)
        metrics.record_persistence_failure(symbol)
        raise StatePersistenceFailed(symbol, f"{action} failed after {self.write_retries} attempts: {last_error}")

    @abstractmethod
    async def _read(self, symbol: str) -> Optional[Dict[str, Any]]:
        ...

    @abstractmethod
    async def _read_all(self) -> List[Dict[str, Any]]:
        ...

    @abstractmethod
    async def _write(self, symbol: str, payload: Dict[str, Any]) -> None:
        ...

    @abstractmethod
    async def _write_fields(self, symbol: str, fields: Dict[str, Any]) -> bool:
        ...


class MemoryTickerStateStore(TickerStateStore):
    """Process-local store; records are kept serialized so readers never alias live objects."""

    def __init__(self, write_retries: int = 3, retry_backoff_s: float = 0.0):
        super().__init__(write_retries, retry_backoff_s)
        self._records: Dict[str, str] = {}

    async def _read(self, symbol: str) -> Optional[Dict[str, Any]]:
        raw = self._records.get(symbol)
        return json.loads(raw) if raw is not None else None

    async def _read_all(self) -> List[Dict[str, Any]]:
        return [json.loads(raw) for _, raw in sorted(self._records.items())]

    async def _write(self, symbol: str, payload: Dict[str, Any]) -> None:
        self._records[symbol] = json.dumps(payload)

    async def _write_fields(self, symbol: str, fields: Dict[str, Any]) -> bool:
        raw = self._records.get(symbol)
        if raw is None:
            return False
        record = json.loads(raw)
        record.update(fields)
        self._records[symbol] = json.dumps(record)
        return True


class PostgresTickerStateStore(TickerStateStore):
    """asyncpg-backed store; one row per symbol with JSONB columns."""

    CREATE_SQL = """
        CREATE TABLE IF NOT EXISTS ticker_state (
            symbol TEXT PRIMARY KEY,
            ladder JSONB,
            last_bar JSONB,
            monitoring JSONB,
            updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
        )
    """

    def __init__(self, dsn: str, write_retries: int = 3, retry_backoff_s: float = 0.5,
                 min_size: int = 1, max_size: int = 10):
        super().__init__(write_retries, retry_backoff_s)
        self.dsn = dsn
        self.min_size = min_size
        self.max_size = max_size
        self.pool = None

    async def initialize(self) -> None:
        self.pool = await asyncpg.create_pool(dsn=self.dsn, min_size=self.min_size, max_size=self.max_size)
        async with self.pool.acquire() as conn:
            await conn.execute(self.CREATE_SQL)
        logger.info("Ticker state table ready")

    async def close(self) -> None:
        if self.pool:
            await self.pool.close()
            self.pool = None

    async def _read(self, symbol: str) -> Optional[Dict[str, Any]]:
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                "SELECT symbol, ladder, last_bar, monitoring FROM ticker_state WHERE symbol = $1",
                symbol,
            )
        return self._row_to_payload(row) if row else None

    async def _read_all(self) -> List[Dict[str, Any]]:
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(
                "SELECT symbol, ladder, last_bar, monitoring FROM ticker_state ORDER BY symbol"
            )
        return [self._row_to_payload(row) for row in rows]

    async def _write(self, symbol: str, payload: Dict[str, Any]) -> None:
        async with self.pool.acquire() as conn:
            await conn.execute(
                """
                INSERT INTO ticker_state (symbol, ladder, last_bar, monitoring, updated_at)
                VALUES ($1, $2::jsonb, $3::jsonb, $4::jsonb, now())
                ON CONFLICT (symbol) DO UPDATE SET
                    ladder = EXCLUDED.ladder,
                    last_bar = EXCLUDED.last_bar,
                    monitoring = EXCLUDED.monitoring,
                    updated_at = now()
                """,
                symbol,
                self._dump(payload.get('ladder')),
                self._dump(payload.get('last_bar')),
                self._dump(payload.get('monitoring')),
            )

    async def _write_fields(self, symbol: str, fields: Dict[str, Any]) -> bool:
        if not fields:
            return True
        assignments = []
        values: List[Any] = [symbol]
        for name in STATE_FIELDS:
            if name not in fields:
                continue
            values.append(self._dump(fields[name]))
            assignments.append(f"{name} = ${len(values)}::jsonb")
        query = f"UPDATE ticker_state SET {', '.join(assignments)}, updated_at = now() WHERE symbol = $1"
        async with self.pool.acquire() as conn:
            status = await conn.execute(query, *values)
        return status.endswith(' 1')

    @staticmethod
    def _dump(value: Optional[Dict[str, Any]]) -> Optional[str]:
        return json.dumps(value) if value is not None else None

    @staticmethod
    def _row_to_payload(row) -> Dict[str, Any]:
        def _load(value):
            if value is None or isinstance(value, dict):
                return value
            return json.loads(value)

        return {
            'symbol': row['symbol'],
            'ladder': _load(row['ladder']),
            'last_bar': _load(row['last_bar']),
            'monitoring': _load(row['monitoring']),
        }


def build_state_store(storage_cfg) -> TickerStateStore:
    storage_cfg = storage_cfg or {}
    backend = (storage_cfg.get('backend') or 'memory').lower()
    retries = storage_cfg.get('write_retries', 3)
    backoff = storage_cfg.get('retry_backoff_s', 0.5)
    if backend == 'postgres':
        dsn = storage_cfg.get('dsn')
        if not dsn or str(dsn).startswith('${'):
            raise RuntimeError("storage.dsn is required for the postgres backend")
        return PostgresTickerStateStore(dsn, write_retries=retries, retry_backoff_s=backoff)
    if backend != 'memory':
        raise RuntimeError(f"Unknown storage backend '{backend}'")
    return MemoryTickerStateStore(write_retries=retries, retry_backoff_s=backoff)
