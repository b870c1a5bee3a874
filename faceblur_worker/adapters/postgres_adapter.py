"""
Postgres adapter implementations for the job queue and the status store.

The queue is a single `job_queue` table shared by every named queue. Jobs
are claimed with `FOR UPDATE SKIP LOCKED` so concurrent workers never
receive the same row, and a claimed row carries a lease token plus an
expiry so abandoned work becomes claimable again.
"""

import uuid
import logging
from typing import Optional, Dict, Any, List, Union, Tuple

from psycopg import sql
from psycopg.rows import dict_row
from psycopg.types.json import Jsonb
from psycopg_pool import ConnectionPool

from .base import JobQueueAdapter, StatusStoreAdapter
from ..backoff import QueuePolicy
from ..errors import InvalidTransitionError, VideoNotFoundError
from ..logging_setup import log_exception
from ..models import (
    DeadLetter,
    FaceRecord,
    JobHandle,
    JobType,
    NackResult,
    RedactionMode,
    VideoRecord,
)
from ..status import (
    CHECKPOINT_PROGRESS,
    RESETTABLE_STATES,
    VideoStatus,
    allowed_sources,
    coerce_status,
)

logger = logging.getLogger("faceblur_worker")


QUEUE_SCHEMA = """
CREATE TABLE IF NOT EXISTS job_queue (
    id BIGSERIAL PRIMARY KEY,
    queue_name TEXT NOT NULL,
    job_type TEXT NOT NULL,
    payload JSONB NOT NULL,
    priority INTEGER NOT NULL DEFAULT 1,
    status TEXT NOT NULL DEFAULT 'pending',
    attempts INTEGER NOT NULL DEFAULT 0,
    max_attempts INTEGER NOT NULL,
    available_at TIMESTAMPTZ NOT NULL DEFAULT now(),
    lease_expires_at TIMESTAMPTZ,
    lease_token TEXT,
    lease_expired BOOLEAN NOT NULL DEFAULT false,
    last_error TEXT,
    created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
    updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
);
ALTER TABLE job_queue ADD COLUMN IF NOT EXISTS lease_expired BOOLEAN NOT NULL DEFAULT false;
CREATE INDEX IF NOT EXISTS job_queue_claim_idx
    ON job_queue (queue_name, job_type, status, priority, available_at);
"""

STATUS_SCHEMA = """
CREATE TABLE IF NOT EXISTS users (
    id TEXT PRIMARY KEY,
    email TEXT,
    webhook_url TEXT,
    created_at TIMESTAMPTZ NOT NULL DEFAULT now()
);
CREATE TABLE IF NOT EXISTS videos (
    id TEXT PRIMARY KEY,
    user_id TEXT REFERENCES users(id) ON DELETE SET NULL,
    filename TEXT NOT NULL,
    input_url TEXT NOT NULL,
    output_url TEXT,
    status TEXT NOT NULL DEFAULT 'uploaded',
    upload_progress INTEGER NOT NULL DEFAULT 0,
    processing_progress INTEGER NOT NULL DEFAULT 0,
    total_frames INTEGER NOT NULL DEFAULT 0,
    faces_detected INTEGER NOT NULL DEFAULT 0,
    frame_screenshot_url TEXT,
    frame_screenshot_public_id TEXT,
    blur_intensity INTEGER NOT NULL DEFAULT 25,
    processing_mode TEXT NOT NULL DEFAULT 'blur',
    error_message TEXT,
    processing_time_ms INTEGER,
    notified_at TIMESTAMPTZ,
    created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
    updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
    processed_at TIMESTAMPTZ
);
CREATE TABLE IF NOT EXISTS faces (
    id BIGSERIAL PRIMARY KEY,
    video_id TEXT NOT NULL REFERENCES videos(id) ON DELETE CASCADE,
    face_id INTEGER NOT NULL,
    x INTEGER NOT NULL,
    y INTEGER NOT NULL,
    width INTEGER NOT NULL,
    height INTEGER NOT NULL,
    confidence NUMERIC(5, 4) NOT NULL,
    created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
    UNIQUE (video_id, face_id)
);
CREATE INDEX IF NOT EXISTS videos_status_idx ON videos (status);
"""


def _create_pool(database_url: str, pool_size: int, timeout: int, application_name: str) -> ConnectionPool:
    return ConnectionPool(
        database_url,
        min_size=1,
        max_size=pool_size,
        kwargs={
            "connect_timeout": timeout,
            "application_name": application_name
        }
    )


class PostgresJobQueueAdapter(JobQueueAdapter):
    """Postgres implementation of one named job queue"""

    def __init__(self, policy: QueuePolicy, database_url: str, pool_size: int = 5,
                 timeout: int = 10, **poll_settings):
        super().__init__(policy, **poll_settings)
        self.database_url = database_url
        self.pool_size = pool_size
        self.timeout = timeout
        self.pool = None

    def connect(self):
        """Initialize connection pool"""
        try:
            self.pool = _create_pool(self.database_url, self.pool_size, self.timeout,
                                     f"faceblur_worker_{self.name}")
            logger.info(f"Postgres queue '{self.name}' connection pool initialized")
            self._bootstrap_schema()
        except Exception as e:
            log_exception(logger, f"Failed to connect to Postgres queue '{self.name}': {e}")
            raise

    def _bootstrap_schema(self):
        with self.pool.connection() as conn:
            with conn.cursor() as cur:
                cur.execute(QUEUE_SCHEMA)
                conn.commit()

    def enqueue(self, job_type: Union[str, JobType], payload: Dict[str, Any], delay: float = 0,
                priority: Optional[int] = None, max_attempts: Optional[int] = None) -> JobHandle:
        job_type = JobType(job_type)
        with self.pool.connection() as conn:
            with conn.cursor(row_factory=dict_row) as cur:
                cur.execute("""
                    INSERT INTO job_queue (queue_name, job_type, payload, priority, max_attempts, available_at)
                    VALUES (%s, %s, %s, %s, %s, now() + make_interval(secs => %s))
                    RETURNING *
                """, (self.name, job_type.value, Jsonb(payload), self._priority(priority),
                      self._max_attempts(max_attempts), max(float(delay), 0.0)))
                row = cur.fetchone()
                conn.commit()

        logger.debug(f"Enqueued {job_type.value} job {row['id']} on {self.name}")
        return self._handle(row)

    def claim(self, job_type: Union[str, JobType]) -> Optional[JobHandle]:
        """Atomically claim the highest-priority ready job"""
        job_type = JobType(job_type)
        with self.pool.connection() as conn:
            with conn.cursor(row_factory=dict_row) as cur:
                # A flagged redelivery that was abandoned too goes straight to the dead-letter state
                cur.execute("""
                    UPDATE job_queue
                    SET status = 'dead',
                        last_error = COALESCE(last_error, 'Lease expired after final attempt'),
                        lease_token = NULL,
                        updated_at = now()
                    WHERE queue_name = %s AND status = 'active'
                      AND lease_expires_at <= now() AND lease_expired
                    RETURNING id
                """, (self.name,))
                for expired in cur.fetchall():
                    logger.error(f"Job {expired['id']} on {self.name} lost its lease again after the final attempt; dead-lettered")

                cur.execute("""
                    WITH j AS (
                        SELECT id
                        FROM job_queue
                        WHERE queue_name = %(queue)s AND job_type = %(job_type)s
                          AND ((status = 'pending' AND available_at <= now())
                               OR (status = 'active' AND lease_expires_at <= now()))
                        ORDER BY priority, available_at, id
                        FOR UPDATE SKIP LOCKED
                        LIMIT 1
                    )
                    UPDATE job_queue
                    SET status = 'active',
                        lease_expired = (job_queue.status = 'active' AND job_queue.attempts >= job_queue.max_attempts),
                        attempts = CASE
                            WHEN job_queue.status = 'active' AND job_queue.attempts >= job_queue.max_attempts
                            THEN job_queue.attempts
                            ELSE job_queue.attempts + 1
                        END,
                        lease_expires_at = now() + make_interval(secs => %(lease)s),
                        lease_token = %(token)s,
                        updated_at = now()
                    FROM j
                    WHERE job_queue.id = j.id
                    RETURNING job_queue.*;
                """, {
                    "queue": self.name,
                    "job_type": job_type.value,
                    "lease": float(self.policy.lease_seconds),
                    "token": str(uuid.uuid4()),
                })
                row = cur.fetchone()
                conn.commit()

        if row is None:
            return None
        if row.get('lease_expired'):
            logger.error(f"Job {row['id']} on {self.name} lost its lease on the final attempt")
        logger.info(f"Claimed {job_type.value} job {row['id']} on {self.name} (attempt {row['attempts']}/{row['max_attempts']})")
        return self._handle(row)

    def ack(self, handle: JobHandle) -> None:
        with self.pool.connection() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    "DELETE FROM job_queue WHERE id = %s AND lease_token = %s",
                    (int(handle.id), handle.receipt)
                )
                deleted = cur.rowcount
                conn.commit()
        if not deleted:
            logger.warning(f"Ignoring stale lease for job {handle.id} on {self.name}")

    def nack(self, handle: JobHandle, error: str, retryable: bool = True) -> NackResult:
        if self._should_retry(handle, retryable):
            delay = self.policy.backoff_for(handle.attempts)
            query = """
                UPDATE job_queue
                SET status = 'pending',
                    available_at = now() + make_interval(secs => %s),
                    lease_expires_at = NULL, lease_token = NULL,
                    last_error = %s, updated_at = now()
                WHERE id = %s AND lease_token = %s
            """
            params: Tuple[Any, ...] = (delay, error, int(handle.id), handle.receipt)
            result = NackResult(dead_lettered=False, delay_sec=delay)
        else:
            query = """
                UPDATE job_queue
                SET status = 'dead',
                    lease_expires_at = NULL, lease_token = NULL,
                    last_error = %s, updated_at = now()
                WHERE id = %s AND lease_token = %s
            """
            params = (error, int(handle.id), handle.receipt)
            result = NackResult(dead_lettered=True)

        with self.pool.connection() as conn:
            with conn.cursor() as cur:
                cur.execute(query, params)
                updated = cur.rowcount
                conn.commit()

        if not updated:
            logger.warning(f"Ignoring stale lease for job {handle.id} on {self.name}")
            return NackResult(dead_lettered=False)
        return result

    def dead_letters(self, limit: int = 50) -> List[DeadLetter]:
        with self.pool.connection() as conn:
            with conn.cursor(row_factory=dict_row) as cur:
                cur.execute("""
                    SELECT id, job_type, payload, last_error, attempts, updated_at
                    FROM job_queue
                    WHERE queue_name = %s AND status = 'dead'
                    ORDER BY updated_at DESC
                    LIMIT %s
                """, (self.name, limit))
                rows = cur.fetchall()

        return [
            DeadLetter(
                job_id=str(row['id']),
                queue_name=self.name,
                job_type=row['job_type'],
                payload=row['payload'],
                last_error=row['last_error'],
                attempts=row['attempts'],
                failed_at=row['updated_at'],
            )
            for row in rows
        ]

    def pending_count(self) -> int:
        with self.pool.connection() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    "SELECT COUNT(*) FROM job_queue WHERE queue_name = %s AND status = 'pending'",
                    (self.name,)
                )
                return cur.fetchone()[0]

    def close(self):
        """Close connection pool"""
        if self.pool:
            self.pool.close()
            logger.info(f"Postgres queue '{self.name}' connection pool closed")

    def _handle(self, row: Dict[str, Any]) -> JobHandle:
        return JobHandle(
            id=str(row['id']),
            queue_name=row['queue_name'],
            job_type=JobType(row['job_type']),
            payload=row['payload'],
            attempts=row['attempts'],
            max_attempts=row['max_attempts'],
            priority=row['priority'],
            created_at=row['created_at'],
            receipt=row['lease_token'],
            lease_expired=bool(row.get('lease_expired')),
        )


class PostgresStatusStore(StatusStoreAdapter):
    """Postgres implementation of the video status store"""

    def __init__(self, database_url: str, pool_size: int = 5, timeout: int = 10):
        self.database_url = database_url
        self.pool_size = pool_size
        self.timeout = timeout
        self.pool = None

    def connect(self):
        """Initialize connection pool"""
        try:
            self.pool = _create_pool(self.database_url, self.pool_size, self.timeout,
                                     "faceblur_worker_status")
            logger.info("Postgres status store connection pool initialized")
            self._bootstrap_schema()
        except Exception as e:
            log_exception(logger, f"Failed to connect to Postgres status store: {e}")
            raise

    def _bootstrap_schema(self):
        with self.pool.connection() as conn:
            with conn.cursor() as cur:
                cur.execute(STATUS_SCHEMA)
                conn.commit()
                logger.info("Postgres status store schema validated")

    def get(self, video_id: str) -> Optional[VideoRecord]:
        with self.pool.connection() as conn:
            with conn.cursor(row_factory=dict_row) as cur:
                cur.execute("SELECT * FROM videos WHERE id = %s", (str(video_id),))
                row = cur.fetchone()
                return VideoRecord.from_row(row) if row else None

    def create(self, video_id: str, initial_fields: Dict[str, Any]) -> VideoRecord:
        fields = {k: v for k, v in initial_fields.items() if k != "status"}
        self._check_columns({k: v for k, v in fields.items() if k != "user_id"})
        columns = ["id"] + list(fields)
        values = [str(video_id)] + [self._db_value(k, v) for k, v in fields.items()]

        query = sql.SQL("INSERT INTO videos ({}) VALUES ({}) RETURNING *").format(
            sql.SQL(", ").join(sql.Identifier(c) for c in columns),
            sql.SQL(", ").join(sql.Placeholder() for _ in columns),
        )
        with self.pool.connection() as conn:
            with conn.cursor(row_factory=dict_row) as cur:
                cur.execute(query, values)
                row = cur.fetchone()
                conn.commit()
        logger.info(f"Created video record {video_id}")
        return VideoRecord.from_row(row)

    def update_fields(self, video_id: str, fields: Dict[str, Any]) -> VideoRecord:
        self._check_columns(fields)
        assignments, params = self._assignments(fields)
        query = sql.SQL("UPDATE videos SET {} WHERE id = %s RETURNING *").format(assignments)

        with self.pool.connection() as conn:
            with conn.cursor(row_factory=dict_row) as cur:
                cur.execute(query, params + [str(video_id)])
                row = cur.fetchone()
                conn.commit()
        if row is None:
            raise VideoNotFoundError(str(video_id))
        return VideoRecord.from_row(row)

    def transition(self, video_id: str, target: VideoStatus,
                   fields: Optional[Dict[str, Any]] = None) -> VideoRecord:
        """Conditional UPDATE guarded by the allowed source statuses"""
        target = coerce_status(target)
        fields = dict(fields or {})
        self._check_columns(fields)
        if target in CHECKPOINT_PROGRESS:
            fields["processing_progress"] = CHECKPOINT_PROGRESS[target]

        assignments, params = self._assignments(fields)
        extra = [sql.SQL("status = %s")]
        if target == VideoStatus.COMPLETED and "processed_at" not in fields:
            extra.append(sql.SQL("processed_at = now()"))
        query = sql.SQL("UPDATE videos SET {}, {} WHERE id = %s AND status = ANY(%s) RETURNING *").format(
            sql.SQL(", ").join(extra), assignments
        )
        sources = [status.value for status in allowed_sources(target)]

        with self.pool.connection() as conn:
            with conn.cursor(row_factory=dict_row) as cur:
                cur.execute(query, [target.value] + params + [str(video_id), sources])
                row = cur.fetchone()
                if row is None:
                    cur.execute("SELECT status FROM videos WHERE id = %s", (str(video_id),))
                    current = cur.fetchone()
                conn.commit()

        if row is None:
            if current is None:
                raise VideoNotFoundError(str(video_id))
            raise InvalidTransitionError(str(video_id), current['status'], target.value)
        return VideoRecord.from_row(row)

    def reset_for_reprocess(self, video_id: str, fields: Optional[Dict[str, Any]] = None) -> VideoRecord:
        fields = dict(fields or {})
        self._check_columns(fields)
        assignments, params = self._assignments(fields, monotonic_progress=False)
        query = sql.SQL("""
            UPDATE videos
            SET status = 'uploaded', processing_progress = 0, faces_detected = 0,
                frame_screenshot_url = NULL, frame_screenshot_public_id = NULL,
                error_message = NULL, processing_time_ms = NULL,
                processed_at = NULL, notified_at = NULL, {}
            WHERE id = %s AND status = ANY(%s)
            RETURNING *
        """).format(assignments)
        resettable = [status.value for status in RESETTABLE_STATES]

        with self.pool.connection() as conn:
            with conn.cursor(row_factory=dict_row) as cur:
                cur.execute(query, params + [str(video_id), resettable])
                row = cur.fetchone()
                if row is None:
                    cur.execute("SELECT status FROM videos WHERE id = %s", (str(video_id),))
                    current = cur.fetchone()
                else:
                    cur.execute("DELETE FROM faces WHERE video_id = %s", (str(video_id),))
                conn.commit()

        if row is None:
            if current is None:
                raise VideoNotFoundError(str(video_id))
            raise InvalidTransitionError(str(video_id), current['status'], VideoStatus.UPLOADED.value)
        logger.info(f"Video {video_id} reset for reprocessing")
        return VideoRecord.from_row(row)

    def replace_faces(self, video_id: str, faces: List[FaceRecord]) -> None:
        """Replace all face rows of a video in one transaction"""
        face_data = [
            (str(video_id), face.face_index, face.x, face.y, face.width, face.height, face.confidence)
            for face in faces
        ]
        with self.pool.connection() as conn:
            with conn.cursor() as cur:
                cur.execute("DELETE FROM faces WHERE video_id = %s", (str(video_id),))
                if face_data:
                    cur.executemany("""
                        INSERT INTO faces (video_id, face_id, x, y, width, height, confidence)
                        VALUES (%s, %s, %s, %s, %s, %s, %s)
                    """, face_data)
                conn.commit()
        logger.info(f"Stored {len(face_data)} faces for video {video_id}")

    def delete_faces(self, video_id: str) -> int:
        with self.pool.connection() as conn:
            with conn.cursor() as cur:
                cur.execute("DELETE FROM faces WHERE video_id = %s", (str(video_id),))
                deleted = cur.rowcount
                conn.commit()
                return deleted

    def get_faces(self, video_id: str) -> List[FaceRecord]:
        with self.pool.connection() as conn:
            with conn.cursor(row_factory=dict_row) as cur:
                cur.execute("""
                    SELECT video_id, face_id, x, y, width, height, confidence
                    FROM faces WHERE video_id = %s ORDER BY face_id
                """, (str(video_id),))
                return [
                    FaceRecord(
                        video_id=row['video_id'],
                        face_index=row['face_id'],
                        x=row['x'],
                        y=row['y'],
                        width=row['width'],
                        height=row['height'],
                        confidence=float(row['confidence']),
                    )
                    for row in cur.fetchall()
                ]

    def mark_notified(self, video_id: str) -> bool:
        with self.pool.connection() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    "UPDATE videos SET notified_at = now() WHERE id = %s AND notified_at IS NULL",
                    (str(video_id),)
                )
                claimed = cur.rowcount == 1
                conn.commit()
                return claimed

    def get_webhook_url(self, video_id: str) -> Optional[str]:
        with self.pool.connection() as conn:
            with conn.cursor() as cur:
                cur.execute("""
                    SELECT u.webhook_url
                    FROM videos v
                    JOIN users u ON v.user_id = u.id
                    WHERE v.id = %s
                """, (str(video_id),))
                result = cur.fetchone()
                return result[0] if result else None

    def get_stats(self) -> Dict[str, Any]:
        """Get storage statistics for monitoring"""
        with self.pool.connection() as conn:
            with conn.cursor() as cur:
                cur.execute("""
                    SELECT status, COUNT(*) as count
                    FROM videos
                    GROUP BY status
                """)
                video_counts = {row[0]: row[1] for row in cur.fetchall()}

                cur.execute("SELECT COUNT(*) FROM faces")
                total_faces = cur.fetchone()[0]

                return {
                    "store_type": "postgres",
                    "total_videos": sum(video_counts.values()),
                    "videos_by_status": video_counts,
                    "total_faces": total_faces,
                }

    def close(self):
        """Close connection pool"""
        if self.pool:
            self.pool.close()
            logger.info("Postgres status store connection pool closed")

    @staticmethod
    def _db_value(name: str, value: Any) -> Any:
        if name == "processing_mode":
            return RedactionMode.parse(value).value
        return value

    def _assignments(self, fields: Dict[str, Any], monotonic_progress: bool = True):
        parts = []
        params: List[Any] = []
        for name, value in fields.items():
            if name == "processing_progress" and monotonic_progress:
                parts.append(sql.SQL("processing_progress = GREATEST(processing_progress, %s)"))
            else:
                parts.append(sql.SQL("{} = %s").format(sql.Identifier(name)))
            params.append(self._db_value(name, value))
        parts.append(sql.SQL("updated_at = now()"))
        return sql.SQL(", ").join(parts), params
