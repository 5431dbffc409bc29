"""Job, source and query-embedding persistence.

Two implementations ship: :class:`MemoryStore` for tests and single-process
use, and :class:`SQLiteStore` for durable local storage. Writes are
last-write-wins per job id.
"""

from __future__ import annotations

import abc
import asyncio
import logging
import sqlite3
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional, Sequence

import numpy as np

from .errors import JobNotFound, StoreConflict, StoreError
from .types import Job, JobStatus, Source

logger = logging.getLogger(__name__)


def _best_match(
    candidates: Sequence[str], matrix: np.ndarray, embedding: Sequence[float], threshold: float
) -> Optional[str]:
    if not candidates:
        return None
    query = np.asarray(embedding, dtype=np.float32)
    if matrix.shape[1] != query.shape[0]:
        return None
    norms = np.linalg.norm(matrix, axis=1) * np.linalg.norm(query)
    norms[norms == 0] = np.inf
    scores = matrix @ query / norms
    best = int(np.argmax(scores))
    if float(scores[best]) >= threshold:
        return candidates[best]
    return None


class Store(abc.ABC):
    """Persistence contract used by the orchestrator and the HTTP API."""

    @abc.abstractmethod
    async def create_job(self, job: Job) -> None:
        ...

    @abc.abstractmethod
    async def get_job(self, job_id: str) -> Job:
        ...

    @abc.abstractmethod
    async def update_job(self, job: Job) -> None:
        ...

    @abc.abstractmethod
    async def list_jobs(self, limit: int = 20, offset: int = 0) -> List[Job]:
        ...

    @abc.abstractmethod
    async def store_sources(self, job_id: str, sources: Sequence[Source]) -> None:
        ...

    @abc.abstractmethod
    async def get_sources(self, job_id: str) -> List[Source]:
        ...

    @abc.abstractmethod
    async def complete_job(self, job: Job, sources: Sequence[Source]) -> None:
        """Persist the finished job and its sources in one atomic step."""

    @abc.abstractmethod
    async def store_embedding(self, job_id: str, embedding: Sequence[float]) -> None:
        ...

    @abc.abstractmethod
    async def find_similar(
        self, embedding: Sequence[float], threshold: float, since: Optional[datetime] = None
    ) -> Optional[str]:
        """Id of the most similar completed job at or above ``threshold``."""


class MemoryStore(Store):
    def __init__(self) -> None:
        self._jobs: Dict[str, Job] = {}
        self._sources: Dict[str, List[Source]] = {}
        self._embeddings: Dict[str, np.ndarray] = {}
        self._lock = asyncio.Lock()

    async def create_job(self, job: Job) -> None:
        async with self._lock:
            if job.id in self._jobs:
                raise StoreConflict(f"job already exists: {job.id}")
            self._jobs[job.id] = job.model_copy(deep=True)
            self._sources[job.id] = []

    async def get_job(self, job_id: str) -> Job:
        async with self._lock:
            try:
                return self._jobs[job_id].model_copy(deep=True)
            except KeyError:
                raise JobNotFound(job_id) from None

    async def update_job(self, job: Job) -> None:
        async with self._lock:
            if job.id not in self._jobs:
                raise JobNotFound(job.id)
            self._jobs[job.id] = job.model_copy(deep=True)

    async def list_jobs(self, limit: int = 20, offset: int = 0) -> List[Job]:
        async with self._lock:
            jobs = sorted(self._jobs.values(), key=lambda job: job.created_at, reverse=True)
            return [job.model_copy(deep=True) for job in jobs[offset : offset + limit]]

    async def store_sources(self, job_id: str, sources: Sequence[Source]) -> None:
        async with self._lock:
            if job_id not in self._jobs:
                raise JobNotFound(job_id)
            self._merge_sources(job_id, sources)

    async def get_sources(self, job_id: str) -> List[Source]:
        async with self._lock:
            if job_id not in self._jobs:
                raise JobNotFound(job_id)
            return list(self._sources.get(job_id, []))

    async def complete_job(self, job: Job, sources: Sequence[Source]) -> None:
        async with self._lock:
            if job.id not in self._jobs:
                raise JobNotFound(job.id)
            self._jobs[job.id] = job.model_copy(deep=True)
            self._merge_sources(job.id, sources)

    async def store_embedding(self, job_id: str, embedding: Sequence[float]) -> None:
        async with self._lock:
            if job_id not in self._jobs:
                raise JobNotFound(job_id)
            self._embeddings[job_id] = np.asarray(embedding, dtype=np.float32)

    async def find_similar(
        self, embedding: Sequence[float], threshold: float, since: Optional[datetime] = None
    ) -> Optional[str]:
        async with self._lock:
            candidates = [
                job_id
                for job_id in self._embeddings
                if self._jobs[job_id].status == JobStatus.COMPLETED
                and (since is None or (self._jobs[job_id].completed_at or self._jobs[job_id].created_at) >= since)
            ]
            if not candidates:
                return None
            matrix = np.stack([self._embeddings[job_id] for job_id in candidates])
        return _best_match(candidates, matrix, embedding, threshold)

    def _merge_sources(self, job_id: str, sources: Sequence[Source]) -> None:
        existing = self._sources.setdefault(job_id, [])
        known = {source.id for source in existing}
        existing.extend(source for source in sources if source.id not in known)


class SQLiteStore(Store):
    """SQLite-backed store; each call runs on a worker thread with its own connection."""

    def __init__(self, path: str = "citewise.db"):
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._ensure_tables()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.path)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    def _ensure_tables(self) -> None:
        conn = self._connect()
        try:
            conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS jobs (
                    id TEXT PRIMARY KEY,
                    status TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    completed_at TEXT,
                    payload TEXT NOT NULL
                );
                CREATE TABLE IF NOT EXISTS sources (
                    id TEXT NOT NULL,
                    job_id TEXT NOT NULL REFERENCES jobs(id) ON DELETE CASCADE,
                    position INTEGER NOT NULL,
                    payload TEXT NOT NULL,
                    PRIMARY KEY (job_id, id)
                );
                CREATE TABLE IF NOT EXISTS embeddings (
                    job_id TEXT PRIMARY KEY REFERENCES jobs(id) ON DELETE CASCADE,
                    dim INTEGER NOT NULL,
                    vector BLOB NOT NULL
                );
                CREATE INDEX IF NOT EXISTS idx_jobs_created_at ON jobs(created_at);
                """
            )
            conn.commit()
        finally:
            conn.close()

    @staticmethod
    def _job_row(job: Job) -> tuple:
        return (
            job.id,
            job.status.value,
            job.created_at.isoformat(),
            job.completed_at.isoformat() if job.completed_at else None,
            job.model_dump_json(),
        )

    # --- synchronous implementations, run via asyncio.to_thread ----------

    def _create_job(self, job: Job) -> None:
        conn = self._connect()
        try:
            conn.execute(
                "INSERT INTO jobs (id, status, created_at, completed_at, payload) VALUES (?, ?, ?, ?, ?)",
                self._job_row(job),
            )
            conn.commit()
        except sqlite3.IntegrityError as exc:
            raise StoreConflict(f"job already exists: {job.id}") from exc
        finally:
            conn.close()

    def _get_job(self, job_id: str) -> Job:
        conn = self._connect()
        try:
            row = conn.execute("SELECT payload FROM jobs WHERE id = ?", (job_id,)).fetchone()
        finally:
            conn.close()
        if row is None:
            raise JobNotFound(job_id)
        return Job.model_validate_json(row["payload"])

    def _write_job(self, conn: sqlite3.Connection, job: Job) -> None:
        cursor = conn.execute(
            "UPDATE jobs SET status = ?, created_at = ?, completed_at = ?, payload = ? WHERE id = ?",
            self._job_row(job)[1:] + (job.id,),
        )
        if cursor.rowcount == 0:
            raise JobNotFound(job.id)

    def _write_sources(self, conn: sqlite3.Connection, job_id: str, sources: Sequence[Source]) -> None:
        start = conn.execute(
            "SELECT COALESCE(MAX(position) + 1, 0) FROM sources WHERE job_id = ?", (job_id,)
        ).fetchone()[0]
        conn.executemany(
            "INSERT OR IGNORE INTO sources (id, job_id, position, payload) VALUES (?, ?, ?, ?)",
            [(source.id, job_id, start + idx, source.model_dump_json()) for idx, source in enumerate(sources)],
        )

    def _update_job(self, job: Job) -> None:
        conn = self._connect()
        try:
            with conn:
                self._write_job(conn, job)
        finally:
            conn.close()

    def _list_jobs(self, limit: int, offset: int) -> List[Job]:
        conn = self._connect()
        try:
            rows = conn.execute(
                "SELECT payload FROM jobs ORDER BY created_at DESC LIMIT ? OFFSET ?", (limit, offset)
            ).fetchall()
        finally:
            conn.close()
        return [Job.model_validate_json(row["payload"]) for row in rows]

    def _require_job(self, conn: sqlite3.Connection, job_id: str) -> None:
        if conn.execute("SELECT 1 FROM jobs WHERE id = ?", (job_id,)).fetchone() is None:
            raise JobNotFound(job_id)

    def _store_sources(self, job_id: str, sources: Sequence[Source]) -> None:
        conn = self._connect()
        try:
            with conn:
                self._require_job(conn, job_id)
                self._write_sources(conn, job_id, sources)
        finally:
            conn.close()

    def _get_sources(self, job_id: str) -> List[Source]:
        conn = self._connect()
        try:
            self._require_job(conn, job_id)
            rows = conn.execute(
                "SELECT payload FROM sources WHERE job_id = ? ORDER BY position", (job_id,)
            ).fetchall()
        finally:
            conn.close()
        return [Source.model_validate_json(row["payload"]) for row in rows]

    def _complete_job(self, job: Job, sources: Sequence[Source]) -> None:
        conn = self._connect()
        try:
            with conn:
                self._write_job(conn, job)
                self._write_sources(conn, job.id, sources)
        finally:
            conn.close()

    def _store_embedding(self, job_id: str, embedding: Sequence[float]) -> None:
        vector = np.asarray(embedding, dtype=np.float32)
        conn = self._connect()
        try:
            with conn:
                self._require_job(conn, job_id)
                conn.execute(
                    """
                    INSERT INTO embeddings (job_id, dim, vector) VALUES (?, ?, ?)
                    ON CONFLICT(job_id) DO UPDATE SET dim=excluded.dim, vector=excluded.vector
                    """,
                    (job_id, int(vector.shape[0]), vector.tobytes()),
                )
        finally:
            conn.close()

    def _find_similar(
        self, embedding: Sequence[float], threshold: float, since: Optional[datetime]
    ) -> Optional[str]:
        query = """
            SELECT e.job_id, e.dim, e.vector FROM embeddings e
            JOIN jobs j ON j.id = e.job_id
            WHERE j.status = ?
        """
        params: List[object] = [JobStatus.COMPLETED.value]
        if since is not None:
            query += " AND j.completed_at >= ?"
            params.append(since.isoformat())
        conn = self._connect()
        try:
            rows = conn.execute(query, params).fetchall()
        finally:
            conn.close()
        dim = len(embedding)
        rows = [row for row in rows if row["dim"] == dim]
        if not rows:
            return None
        matrix = np.stack([np.frombuffer(row["vector"], dtype=np.float32) for row in rows])
        return _best_match([row["job_id"] for row in rows], matrix, embedding, threshold)

    # --- async interface ---------------------------------------------------

    async def _run(self, func, *args):
        try:
            return await asyncio.to_thread(func, *args)
        except sqlite3.Error as exc:
            logger.error("SQLite operation %s failed: %s", func.__name__, exc)
            raise StoreError(str(exc)) from exc

    async def create_job(self, job: Job) -> None:
        await self._run(self._create_job, job)

    async def get_job(self, job_id: str) -> Job:
        return await self._run(self._get_job, job_id)

    async def update_job(self, job: Job) -> None:
        await self._run(self._update_job, job)

    async def list_jobs(self, limit: int = 20, offset: int = 0) -> List[Job]:
        return await self._run(self._list_jobs, limit, offset)

    async def store_sources(self, job_id: str, sources: Sequence[Source]) -> None:
        await self._run(self._store_sources, job_id, list(sources))

    async def get_sources(self, job_id: str) -> List[Source]:
        return await self._run(self._get_sources, job_id)

    async def complete_job(self, job: Job, sources: Sequence[Source]) -> None:
        await self._run(self._complete_job, job, list(sources))

    async def store_embedding(self, job_id: str, embedding: Sequence[float]) -> None:
        await self._run(self._store_embedding, job_id, list(embedding))

    async def find_similar(
        self, embedding: Sequence[float], threshold: float, since: Optional[datetime] = None
    ) -> Optional[str]:
        return await self._run(self._find_similar, list(embedding), threshold, since)


def build_store(config: Dict[str, object]) -> Store:
    """Store selected by the ``store`` section of the app config."""

    backend = str(config.get("backend", "memory"))
    if backend == "memory":
        return MemoryStore()
    if backend == "sqlite":
        return SQLiteStore(str(config.get("path", "citewise.db")))
    raise ValueError(f"Unsupported store backend: {backend}")
