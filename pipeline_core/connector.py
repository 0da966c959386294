"""Uniform extraction over relational, HTTP-API, file and stream sources.

Every registered source owns exactly one live handle: a small pool of
``sqlite3`` connections, an ``httpx.AsyncClient`` carrying auth headers, the
parsed file settings, or a stream session placeholder. ``extract_data`` never
raises; failures come back as an ``ExtractionResult`` with ``success=False``.
"""

import asyncio
import csv
import io
import json
import logging
import os
import queue
import sqlite3
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, Iterator, List, Optional, Union

import httpx

from .events import EventBus
from .models import (
    ApiSourceSettings,
    DataSourceConfig,
    ExtractionMetadata,
    ExtractionResult,
    FileSourceSettings,
    Record,
    utcnow,
)
from .resilience import ErrorHandler

logger = logging.getLogger(__name__)

SUPPORTED_SOURCE_TYPES = ("database", "api", "file", "stream")
DEFAULT_API_ENDPOINT = "/data"
HEALTH_ENDPOINT = "/health"

Query = Union[str, Dict[str, Any], None]


class DataSourceNotFoundError(LookupError):
    code = "NOT_FOUND"

    def __init__(self, source_id: str):
        super().__init__(f"Data source {source_id} not found")
        self.source_id = source_id


class UnsupportedSourceTypeError(ValueError):
    def __init__(self, source_type: Any):
        super().__init__(f"Unsupported data source type: {source_type}")
        self.source_type = source_type


class RateLimitExceededError(Exception):
    code = "RATE_LIMITED"

    def __init__(self, source_id: str, retry_after: float):
        super().__init__(
            f"Rate limit exceeded. Wait {retry_after:.3f}s before next request."
        )
        self.source_id = source_id
        self.retry_after = retry_after


class RateLimiter:
    """Token bucket per source: ``requests`` tokens refilled evenly over ``window``.

    Each API request consumes one token. When the bucket is empty the call
    fails fast with ``RateLimitExceededError`` instead of waiting.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._buckets: Dict[str, List[float]] = {}
        self._lock = threading.Lock()

    def check(self, source_id: str, requests: int, window: float) -> None:
        now = self._clock()
        rate = requests / window
        with self._lock:
            bucket = self._buckets.setdefault(source_id, [float(requests), now])
            tokens, last_refill = bucket
            tokens = min(float(requests), tokens + (now - last_refill) * rate)
            if tokens < 1:
                bucket[:] = [tokens, now]
                raise RateLimitExceededError(source_id, (1 - tokens) / rate)
            bucket[:] = [tokens - 1, now]

    def reset(self, source_id: Optional[str] = None) -> None:
        with self._lock:
            if source_id is None:
                self._buckets.clear()
            else:
                self._buckets.pop(source_id, None)


class SQLitePool:
    """Bounded pool of sqlite3 connections handed out one thread at a time."""

    def __init__(self, database: str, size: int = 5, timeout: float = 5.0):
        self.database = database
        self.size = size
        self.timeout = timeout
        self._idle: "queue.LifoQueue[sqlite3.Connection]" = queue.LifoQueue()
        self._all: List[sqlite3.Connection] = []
        self._lock = threading.Lock()
        self._closed = False

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.database, timeout=self.timeout, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        return conn

    def _acquire(self) -> sqlite3.Connection:
        if self._closed:
            raise sqlite3.ProgrammingError(f"Connection pool for {self.database} is closed")
        try:
            return self._idle.get_nowait()
        except queue.Empty:
            pass
        with self._lock:
            if len(self._all) < self.size:
                conn = self._connect()
                self._all.append(conn)
                return conn
        try:
            return self._idle.get(timeout=self.timeout)
        except queue.Empty:
            raise TimeoutError(
                f"Timed out waiting for a connection to {self.database}"
            ) from None

    @contextmanager
    def connection(self) -> Iterator[sqlite3.Connection]:
        conn = self._acquire()
        try:
            yield conn
        finally:
            if not self._closed:
                self._idle.put(conn)

    def query(self, sql: str, params: Any = ()) -> List[Record]:
        with self.connection() as conn:
            return [dict(row) for row in conn.execute(sql, params).fetchall()]

    def close(self) -> None:
        with self._lock:
            self._closed = True
            for conn in self._all:
                conn.close()
            self._all.clear()


@dataclass
class _Source:
    config: DataSourceConfig
    handle: Any = None
    status: str = "connected"
    last_used: Optional[datetime] = None


@dataclass
class _StreamSession:
    url: str
    protocol: str
    topic: Optional[str] = None
    partition: Optional[int] = None
    status: str = "connected"
    opened_at: datetime = field(default_factory=utcnow)


class DataConnector:
    def __init__(
        self,
        events: Optional[EventBus] = None,
        error_handler: Optional[ErrorHandler] = None,
        http_transport: Optional[httpx.AsyncBaseTransport] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.events = events or EventBus()
        self.error_handler = error_handler or ErrorHandler(self.events)
        self.rate_limiter = RateLimiter(clock)
        self._http_transport = http_transport
        self._sources: Dict[str, _Source] = {}

    # registration ----------------------------------------------------------

    async def register_data_source(
        self, config: Union[DataSourceConfig, Dict[str, Any]]
    ) -> DataSourceConfig:
        if not isinstance(config, DataSourceConfig):
            source_type = (config.get("settings") or {}).get("type")
            if source_type not in SUPPORTED_SOURCE_TYPES:
                raise UnsupportedSourceTypeError(source_type)
            config = DataSourceConfig.model_validate(config)

        try:
            handle = await self._open(config)
        except Exception as exc:
            logger.error("Failed to register data source %s: %s", config.id, exc)
            self.events.publish(
                "data_source_error", "data_connector", source_id=config.id, error=str(exc)
            )
            raise

        previous = self._sources.pop(config.id, None)
        if previous is not None:
            await self._close(config.id, previous)
        self._sources[config.id] = _Source(config=config, handle=handle)

        logger.info("Registered %s data source %s", config.type, config.id)
        self.events.publish(
            "data_source_registered",
            "data_connector",
            source_id=config.id,
            source_type=config.type,
        )
        return config

    async def _open(self, config: DataSourceConfig) -> Any:
        settings = config.settings
        if settings.type == "database":
            pool = SQLitePool(settings.database, settings.pool_size, settings.timeout)
            try:
                await asyncio.to_thread(pool.query, "SELECT 1")
            except Exception:
                pool.close()
                raise
            return pool
        if settings.type == "api":
            return httpx.AsyncClient(
                base_url=settings.base_url,
                headers=self._api_headers(config, settings),
                timeout=settings.timeout,
                transport=self._http_transport,
            )
        if settings.type == "file":
            return settings
        if settings.type == "stream":
            return _StreamSession(
                url=settings.url,
                protocol=settings.protocol,
                topic=settings.topic,
                partition=settings.partition,
            )
        raise UnsupportedSourceTypeError(settings.type)

    @staticmethod
    def _api_headers(config: DataSourceConfig, settings: ApiSourceSettings) -> Dict[str, str]:
        headers = dict(settings.headers)
        credentials = config.credentials
        if credentials and credentials.api_key:
            headers["X-API-Key"] = credentials.api_key
        if credentials and credentials.token:
            headers["Authorization"] = f"Bearer {credentials.token}"
        return headers

    def get_data_source(self, source_id: str) -> DataSourceConfig:
        try:
            return self._sources[source_id].config
        except KeyError:
            raise DataSourceNotFoundError(source_id) from None

    # extraction ------------------------------------------------------------

    async def extract_data(
        self,
        source_id: str,
        query: Query = None,
        limit: Optional[int] = None,
        offset: Optional[int] = None,
    ) -> ExtractionResult:
        started = time.perf_counter()
        try:
            source = self._sources.get(source_id)
            if source is None:
                raise DataSourceNotFoundError(source_id)

            settings = source.config.settings
            if settings.type == "api" and settings.rate_limit:
                self.rate_limiter.check(
                    source_id, settings.rate_limit.requests, settings.rate_limit.window
                )

            retry = source.config.retry or self.error_handler.get_retry_config(settings.type)
            records = await self.error_handler.execute_with_resilience(
                f"{settings.type}:{source_id}",
                lambda: self._extract(source, query, limit, offset),
                retry,
            )
            source.last_used = utcnow()
        except Exception as exc:
            result = ExtractionResult(
                success=False,
                error=str(exc),
                metadata=ExtractionMetadata(
                    record_count=0,
                    execution_time=time.perf_counter() - started,
                    source=source_id,
                ),
            )
            logger.warning("Extraction from %s failed: %s", source_id, exc)
            self.events.publish(
                "extraction_error", "data_connector", source_id=source_id, error=str(exc)
            )
            return result

        result = ExtractionResult(
            success=True,
            records=records,
            metadata=ExtractionMetadata(
                record_count=len(records),
                execution_time=time.perf_counter() - started,
                source=source_id,
            ),
        )
        self.events.publish(
            "data_extracted",
            "data_connector",
            source_id=source_id,
            record_count=len(records),
            execution_time=result.metadata.execution_time,
        )
        return result

    async def _extract(
        self, source: _Source, query: Query, limit: Optional[int], offset: Optional[int]
    ) -> List[Record]:
        settings = source.config.settings
        if settings.type == "database":
            sql, params = self._database_query(query, limit, offset)
            return await asyncio.to_thread(source.handle.query, sql, params)
        if settings.type == "api":
            return await self._extract_api(source.handle, settings, query, limit, offset)
        if settings.type == "file":
            records = await asyncio.to_thread(read_file, settings)
            start = offset or 0
            end = start + limit if limit else None
            return records[start:end]
        if settings.type == "stream":
            # Stream sources are consumed through the broker, not pulled here.
            return []
        raise UnsupportedSourceTypeError(settings.type)

    @staticmethod
    def _database_query(query: Query, limit: Optional[int], offset: Optional[int]):
        if isinstance(query, dict):
            sql, params = query.get("sql"), list(query.get("params", []))
        else:
            sql, params = query, []
        sql = (sql or "").strip().rstrip(";").rstrip()
        if not sql:
            raise ValueError("Database extraction requires a SQL query")
        if limit or offset:
            sql = f"SELECT * FROM ({sql}) LIMIT ? OFFSET ?"
            params += [limit if limit else -1, offset or 0]
        return sql, params

    async def _extract_api(
        self,
        client: httpx.AsyncClient,
        settings: ApiSourceSettings,
        query: Query,
        limit: Optional[int],
        offset: Optional[int],
    ) -> List[Record]:
        params = dict(query) if isinstance(query, dict) else {}
        endpoint = params.pop("endpoint", None)
        if endpoint is None:
            path = settings.endpoints.get("data", DEFAULT_API_ENDPOINT)
        else:
            path = settings.endpoints.get(endpoint, endpoint)
        if limit:
            params["limit"] = limit
        if offset:
            params["offset"] = offset

        response = await client.get(path, params=params)
        response.raise_for_status()
        data = response.json()
        return data if isinstance(data, list) else [data]

    # lifecycle -------------------------------------------------------------

    async def test_connection(self, source_id: str) -> bool:
        source = self._sources.get(source_id)
        if source is None:
            return False
        settings = source.config.settings
        try:
            if settings.type == "database":
                await asyncio.to_thread(source.handle.query, "SELECT 1")
                return True
            if settings.type == "api":
                response = await source.handle.get(HEALTH_ENDPOINT)
                return response.status_code == 200
            if settings.type == "file":
                return os.path.exists(settings.path)
            if settings.type == "stream":
                return source.handle.status == "connected"
        except Exception as exc:
            logger.debug("Connection test for %s failed: %s", source_id, exc)
        return False

    def get_connection_status(self) -> Dict[str, Dict[str, Any]]:
        return {
            source_id: {
                "name": source.config.name,
                "type": source.config.type,
                "status": source.status,
                "last_used": source.last_used,
            }
            for source_id, source in self._sources.items()
        }

    async def _close(self, source_id: str, source: _Source) -> None:
        try:
            if isinstance(source.handle, SQLitePool):
                source.handle.close()
            elif isinstance(source.handle, httpx.AsyncClient):
                await source.handle.aclose()
            elif isinstance(source.handle, _StreamSession):
                source.handle.status = "closed"
        except Exception:
            logger.warning("Error closing connection %s", source_id, exc_info=True)
        source.status = "closed"

    async def close_all_connections(self) -> None:
        for source_id, source in list(self._sources.items()):
            await self._close(source_id, source)
        self._sources.clear()
        self.rate_limiter.reset()
        logger.info("All data source connections closed")
        self.events.publish("all_connections_closed", "data_connector")


def read_file(settings: FileSourceSettings) -> List[Record]:
    with open(settings.path, encoding=settings.encoding, newline="") as handle:
        content = handle.read()
    if settings.format == "json":
        data = json.loads(content)
        return data if isinstance(data, list) else [data]
    return parse_csv(content, settings.delimiter, settings.has_header)


def parse_csv(content: str, delimiter: str = ",", has_header: bool = True) -> List[Record]:
    """Parse CSV text; blank lines are skipped and empty cells become ``None``.

    Without a header row, columns are named ``column_1``, ``column_2``, ...
    """
    rows = [
        [cell.strip() for cell in row]
        for row in csv.reader(io.StringIO(content), delimiter=delimiter)
        if any(cell.strip() for cell in row)
    ]
    if not rows:
        return []
    if has_header:
        headers, rows = rows[0], rows[1:]
    else:
        headers = [f"column_{i + 1}" for i in range(max(len(r) for r in rows))]

    return [
        {
            header: (row[index] if index < len(row) and row[index] != "" else None)
            for index, header in enumerate(headers)
        }
        for row in rows
    ]
