"""PostgreSQL remote record store for QuizSync.

Documents live in one JSONB table keyed by path. Reads of a path with no
row of its own are assembled from the rows underneath it, so the whole tree
(including legacy top-level records) can be read at once during migration.

- Transactions take a per-path advisory lock, so concurrent writers are
  serialized by the server; deadlock/serialization errors are retried.
- Realtime push uses LISTEN/NOTIFY on a dedicated connection watched by the
  event loop.
- Disconnect hooks are stored with the backend pid of that connection. Any
  live client reaps hooks whose backend has gone away and commits them.
- Timestamps come from a single-row clock table, never moving backwards.
"""

import asyncio
import copy
import logging
from contextlib import contextmanager
from typing import Any

import psycopg2
import psycopg2.errors
import psycopg2.extensions
from psycopg2 import pool
from psycopg2.extras import Json

from core.record_store import (
    ChangeCallback,
    Document,
    RecordStore,
    StoreError,
    StoreUnavailableError,
    Subscription,
    TransactionAbortedError,
    TransactionFn,
    join_path,
    resolve_server_timestamps,
    split_path,
)
from utils.push_id import generate_push_key

log = logging.getLogger("quizsync.postgres_store")

NOTIFY_CHANNEL = "quizsync_documents"

SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS documents (
        path TEXT PRIMARY KEY,
        doc JSONB NOT NULL,
        version BIGINT NOT NULL DEFAULT 1,
        updated_at BIGINT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS disconnect_hooks (
        path TEXT NOT NULL,
        backend_pid INTEGER NOT NULL,
        value JSONB,
        PRIMARY KEY (path, backend_pid)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS store_clock (
        id INTEGER PRIMARY KEY CHECK (id = 1),
        last_ts BIGINT NOT NULL
    )
    """,
    "INSERT INTO store_clock (id, last_ts) VALUES (1, 0) ON CONFLICT (id) DO NOTHING",
)

RETRYABLE_ERRORS = (
    psycopg2.errors.SerializationFailure,
    psycopg2.errors.DeadlockDetected,
)


def _like_prefix(path: str) -> str:
    escaped = path.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    return f"{escaped}/%"


def _ancestors(segments: list[str]) -> list[str]:
    return ["/".join(segments[:i]) for i in range(1, len(segments))]


def _get_in(value: Any, segments: list[str]) -> Any:
    for segment in segments:
        if not isinstance(value, dict) or segment not in value:
            return None
        value = value[segment]
    return value


def _set_in(doc: dict, segments: list[str], value: Any) -> dict:
    """Return a copy of doc with value placed at segments (None removes it)."""
    doc = copy.deepcopy(doc) if isinstance(doc, dict) else {}
    node = doc
    for segment in segments[:-1]:
        child = node.get(segment)
        if not isinstance(child, dict):
            child = {}
            node[segment] = child
        node = child
    if value is None:
        node.pop(segments[-1], None)
    else:
        node[segments[-1]] = value
    return doc


class PostgresSubscription(Subscription):
    """Listener on one path, fed by the store's notification watcher."""

    def __init__(self, path: str, callback: ChangeCallback, store: "PostgresRecordStore"):
        super().__init__(path)
        self.callback = callback
        self.store = store
        self.last_value: Any = object()
        self.queue: asyncio.Queue = asyncio.Queue()
        self._task = asyncio.create_task(self._run())

    def affected_by(self, written: str) -> bool:
        if not self.path or not written:
            return True
        return (
            written == self.path
            or written.startswith(self.path + "/")
            or self.path.startswith(written + "/")
        )

    async def _run(self) -> None:
        while True:
            await self.queue.get()
            try:
                value = await self.store.get_once(self.path)
                if value != self.last_value:
                    self.last_value = value
                    result = self.callback(value)
                    if asyncio.iscoroutine(result):
                        await result
            except Exception as e:
                log.error(f"Change handler for {self.path} failed: {e}")
            finally:
                self.queue.task_done()

    async def _release(self) -> None:
        self.store._subscriptions.discard(self)
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass


class PostgresRecordStore(RecordStore):
    """Remote record store on a PostgreSQL database.

    Uses psycopg2 with a threaded connection pool; blocking calls run in
    worker threads so the event loop keeps serving other tasks.
    """

    def __init__(
        self,
        host: str,
        port: int,
        database: str,
        user: str,
        password: str,
        sslmode: str = "require",
        min_connections: int = 1,
        max_connections: int = 5,
        max_retries: int = 25,
        reap_interval_sec: float = 30.0,
    ):
        """Initialize PostgreSQL store.

        Args:
            host: Database host address
            port: Database port (default: 5432)
            database: Database name
            user: Database user
            password: Database password
            sslmode: SSL mode (disable, allow, prefer, require, verify-ca, verify-full)
            min_connections: Minimum number of connections in pool
            max_connections: Maximum number of connections in pool
            max_retries: Attempts for a transaction before it aborts
            reap_interval_sec: How often to commit hooks of vanished clients
        """
        self._dsn = dict(
            host=host,
            port=port,
            database=database,
            user=user,
            password=password,
            sslmode=sslmode,
            connect_timeout=10,
        )
        self.min_connections = min_connections
        self.max_connections = max_connections
        self.max_retries = max_retries
        self.reap_interval_sec = reap_interval_sec

        self._pool: pool.ThreadedConnectionPool | None = None
        self._listen_conn = None
        self._listen_pid: int | None = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._reaper: asyncio.Task | None = None
        self._subscriptions: set[PostgresSubscription] = set()
        # getconn fails instead of waiting when the pool is exhausted
        self._slots = asyncio.Semaphore(max_connections)

    # ========== Connection management ==========

    async def initialize(self) -> None:
        """Create the pool, the schema and the notification listener."""
        self._loop = asyncio.get_running_loop()
        try:
            await asyncio.to_thread(self._initialize_sync)
        except psycopg2.Error as e:
            raise StoreUnavailableError(f"Failed to connect to PostgreSQL: {e}") from e

        self._loop.add_reader(self._listen_conn.fileno(), self._on_listen_readable)
        self._reaper = asyncio.create_task(self._reap_loop())
        log.info(
            f"Connected to PostgreSQL store {self._dsn['host']}:{self._dsn['port']}/"
            f"{self._dsn['database']} (listener pid {self._listen_pid})"
        )

    def _initialize_sync(self) -> None:
        self._pool = pool.ThreadedConnectionPool(
            minconn=self.min_connections, maxconn=self.max_connections, **self._dsn
        )
        with self._transaction() as cur:
            for statement in SCHEMA_STATEMENTS:
                cur.execute(statement)

        self._listen_conn = psycopg2.connect(**self._dsn)
        self._listen_conn.set_isolation_level(psycopg2.extensions.ISOLATION_LEVEL_AUTOCOMMIT)
        with self._listen_conn.cursor() as cur:
            cur.execute(f"LISTEN {NOTIFY_CHANNEL}")
            cur.execute("SELECT pg_backend_pid()")
            self._listen_pid = cur.fetchone()[0]

    @contextmanager
    def _transaction(self):
        """Yield a cursor inside a transaction on a pooled connection."""
        if self._pool is None:
            raise StoreUnavailableError("PostgreSQL store is not initialized")
        conn = self._pool.getconn()
        try:
            with conn:
                with conn.cursor() as cur:
                    yield cur
        finally:
            self._pool.putconn(conn)

    async def _run(self, fn, *args, retryable: bool = False):
        """Run a blocking database call in a worker thread, mapping driver errors.

        With retryable set, conflicts are raised unchanged so the caller can
        run the transaction again.
        """
        try:
            async with self._slots:
                return await asyncio.to_thread(fn, *args)
        # Conflicts subclass OperationalError, so they are checked first
        except RETRYABLE_ERRORS as e:
            if retryable:
                raise
            raise StoreError(f"PostgreSQL conflict: {e}") from e
        except (psycopg2.OperationalError, psycopg2.InterfaceError) as e:
            raise StoreUnavailableError(f"PostgreSQL unavailable: {e}") from e
        except psycopg2.Error as e:
            raise StoreError(f"PostgreSQL error: {e}") from e

    async def close(self) -> None:
        for sub in list(self._subscriptions):
            await sub.cancel()
        if self._reaper is not None:
            self._reaper.cancel()
            try:
                await self._reaper
            except asyncio.CancelledError:
                pass
            self._reaper = None
        if self._listen_conn is not None:
            if self._loop is not None:
                self._loop.remove_reader(self._listen_conn.fileno())
            try:
                # A clean close still counts as going away
                async with self._slots:
                    await asyncio.to_thread(self._commit_hooks_for, self._listen_pid)
            except psycopg2.Error as e:
                log.warning(f"Could not commit disconnect hooks on close: {e}")
            self._listen_conn.close()
            self._listen_conn = None
        if self._pool is not None:
            self._pool.closeall()
            self._pool = None
        log.info("PostgreSQL store closed")

    # ========== Tree reads and writes (blocking, inside a transaction) ==========

    def _read(self, cur, path: str) -> Any:
        segments = split_path(path)
        if segments:
            cur.execute(
                "SELECT path, doc FROM documents WHERE path = ANY(%s) ORDER BY length(path)",
                (_ancestors(segments) + [path.strip("/")],),
            )
            for row_path, doc in cur.fetchall():
                value = _get_in(doc, segments[len(split_path(row_path)):])
                if value is not None:
                    return value
            cur.execute(
                "SELECT path, doc FROM documents WHERE path LIKE %s",
                (_like_prefix("/".join(segments)),),
            )
        else:
            cur.execute("SELECT path, doc FROM documents")

        tree: dict[str, Any] = {}
        for row_path, doc in cur.fetchall():
            rel = split_path(row_path)[len(segments):]
            tree = _set_in(tree, rel, doc)
        return tree or None

    def _next_timestamp(self, cur) -> int:
        cur.execute(
            """
            UPDATE store_clock
            SET last_ts = GREATEST(last_ts + 1,
                                   (extract(epoch FROM clock_timestamp()) * 1000)::bigint)
            WHERE id = 1
            RETURNING last_ts
            """
        )
        return cur.fetchone()[0]

    def _lock_path(self, cur, path: str) -> None:
        # Lock the top-level segment: every write below it is serialized
        segments = split_path(path)
        cur.execute("SELECT pg_advisory_xact_lock(hashtext(%s))", (segments[0] if segments else "",))

    def _write(self, cur, path: str, value: Any) -> None:
        segments = split_path(path)
        if not segments:
            raise StoreError("Writing the root is not supported")
        now_ms = self._next_timestamp(cur)
        value = resolve_server_timestamps(copy.deepcopy(value), now_ms)

        cur.execute(
            "SELECT path, doc FROM documents WHERE path = ANY(%s) ORDER BY length(path) LIMIT 1",
            (_ancestors(segments),),
        )
        row = cur.fetchone()
        if row is not None:
            # Path lives inside an existing ancestor document
            anc_path, anc_doc = row
            updated = _set_in(anc_doc, segments[len(split_path(anc_path)):], value)
            self._put_row(cur, anc_path, updated or None, now_ms)
        else:
            cur.execute(
                "DELETE FROM documents WHERE path LIKE %s", (_like_prefix("/".join(segments)),)
            )
            self._put_row(cur, "/".join(segments), value, now_ms)

        cur.execute("SELECT pg_notify(%s, %s)", (NOTIFY_CHANNEL, "/".join(segments)))

    def _put_row(self, cur, path: str, value: Any, now_ms: int) -> None:
        if value is None or value == {}:
            cur.execute("DELETE FROM documents WHERE path = %s", (path,))
            return
        cur.execute(
            """
            INSERT INTO documents (path, doc, version, updated_at)
            VALUES (%s, %s, 1, %s)
            ON CONFLICT (path) DO UPDATE
            SET doc = EXCLUDED.doc,
                version = documents.version + 1,
                updated_at = EXCLUDED.updated_at
            """,
            (path, Json(value), now_ms),
        )

    # ========== RecordStore operations ==========

    async def get_once(self, path: str) -> Document | None:
        def op():
            with self._transaction() as cur:
                return self._read(cur, path)

        return await self._run(op)

    async def set_atomic(self, path: str, doc: Document | None) -> None:
        def op():
            with self._transaction() as cur:
                self._lock_path(cur, path)
                self._write(cur, path, doc)

        await self._run(op)

    async def update_fields(self, path: str, partial: Document) -> None:
        def op():
            with self._transaction() as cur:
                self._lock_path(cur, path)
                current = self._read(cur, path)
                merged = current if isinstance(current, dict) else {}
                for key, value in partial.items():
                    if value is None:
                        merged.pop(key, None)
                    else:
                        merged[key] = value
                self._write(cur, path, merged)

        await self._run(op)

    async def transact(self, path: str, fn: TransactionFn) -> Document | None:
        def op():
            with self._transaction() as cur:
                self._lock_path(cur, path)
                proposed = fn(self._read(cur, path))
                self._write(cur, path, proposed)
                return self._read(cur, path)

        for attempt in range(1, self.max_retries + 1):
            try:
                return await self._run(op, retryable=True)
            except RETRYABLE_ERRORS as e:
                log.debug(f"Transaction on {path} conflicted (attempt {attempt}): {e}")
        raise TransactionAbortedError(
            f"Transaction on {path} aborted after {self.max_retries} attempts"
        )

    async def push(self, path: str, doc: Document) -> str:
        key = generate_push_key()
        await self.set_atomic(join_path(path, key), doc)
        return key

    async def subscribe(self, path: str, on_change: ChangeCallback) -> Subscription:
        if self._listen_conn is None:
            raise StoreUnavailableError("PostgreSQL store is not initialized")
        sub = PostgresSubscription(path.strip("/"), on_change, self)
        self._subscriptions.add(sub)
        sub.queue.put_nowait(path)
        return sub

    async def on_disconnect(self, path: str, value: Document | None) -> None:
        if self._listen_pid is None:
            raise StoreUnavailableError("PostgreSQL store is not initialized")

        def op():
            with self._transaction() as cur:
                cur.execute(
                    """
                    INSERT INTO disconnect_hooks (path, backend_pid, value)
                    VALUES (%s, %s, %s)
                    ON CONFLICT (path, backend_pid) DO UPDATE SET value = EXCLUDED.value
                    """,
                    (path, self._listen_pid, Json(value)),
                )

        await self._run(op)

    # ========== Notifications and disconnect hooks ==========

    def _on_listen_readable(self) -> None:
        try:
            self._listen_conn.poll()
        except psycopg2.Error as e:
            log.error(f"Notification connection failed: {e}")
            self._loop.remove_reader(self._listen_conn.fileno())
            return
        while self._listen_conn.notifies:
            written = self._listen_conn.notifies.pop(0).payload
            for sub in list(self._subscriptions):
                if sub.affected_by(written):
                    sub.queue.put_nowait(written)

    def _commit_hooks_for(self, pid: int | None) -> int:
        """Commit and delete the hooks of one backend, or of every vanished one."""
        with self._transaction() as cur:
            if pid is None:
                cur.execute(
                    """
                    SELECT path, backend_pid, value FROM disconnect_hooks h
                    WHERE NOT EXISTS (
                        SELECT 1 FROM pg_stat_activity a WHERE a.pid = h.backend_pid
                    )
                    FOR UPDATE SKIP LOCKED
                    """
                )
            else:
                cur.execute(
                    "SELECT path, backend_pid, value FROM disconnect_hooks "
                    "WHERE backend_pid = %s FOR UPDATE",
                    (pid,),
                )
            hooks = cur.fetchall()
            for path, backend_pid, value in hooks:
                self._lock_path(cur, path)
                self._write(cur, path, value)
                cur.execute(
                    "DELETE FROM disconnect_hooks WHERE path = %s AND backend_pid = %s",
                    (path, backend_pid),
                )
            return len(hooks)

    async def reap_disconnect_hooks(self) -> int:
        """Commit the disconnect values of clients that are gone."""
        committed = await self._run(self._commit_hooks_for, None)
        if committed:
            log.info(f"Committed {committed} disconnect hooks of vanished clients")
        return committed

    async def _reap_loop(self) -> None:
        while True:
            try:
                await self.reap_disconnect_hooks()
            except StoreError as e:
                log.warning(f"Disconnect hook reaping failed: {e}")
            await asyncio.sleep(self.reap_interval_sec)

