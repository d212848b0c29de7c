"""
Checkpoint stores for CDC resume tokens.

FileCheckpointStore keeps the checkpoint in a JSON file written atomically
(temp file + fsync + rename). SQLCheckpointStore keeps it in a SQL table
for deployments that already run a relational database.
"""

from sqlalchemy import create_engine, Column, String, DateTime, JSON, BigInteger, Integer, UniqueConstraint, text
from sqlalchemy.orm import declarative_base, sessionmaker, Session
from sqlalchemy.exc import SQLAlchemyError, OperationalError
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional, IO
import fcntl
import json
import logging
import os
import tempfile
from tenacity import retry, stop_after_attempt, wait_exponential, retry_if_exception_type

from .models import Checkpoint, token_from_json, token_to_json
from ...config.settings import Settings
from ...exceptions import CheckpointError, CheckpointLockedError
from ...monitoring.metrics import checkpoint_saves_total, checkpoint_loads_total

logger = logging.getLogger(__name__)

Base = declarative_base()


class CheckpointStore:
    """
    Durable record of the last confirmed replay position.

    Only one replication process may hold a store at a time: the controller
    calls acquire() before streaming and release() when it stops.
    """

    def load(self) -> Optional[Checkpoint]:
        raise NotImplementedError

    def save(self, checkpoint: Checkpoint) -> None:
        raise NotImplementedError

    def acquire(self) -> None:
        """Claim exclusive ownership. Backends without locking accept every caller."""

    def release(self) -> None:
        """Give up ownership claimed by acquire()."""

    def close(self) -> None:
        self.release()


class FileCheckpointStore(CheckpointStore):
    """
    JSON file checkpoint: {"resumeToken": object|null, "timestamp": ISO-8601}.

    Example:
        >>> store = FileCheckpointStore("./checkpoint.json")
        >>> store.save(Checkpoint.now({"_data": "826..."}))
        >>> store.load().resume_token
        {'_data': '826...'}
    """

    def __init__(self, path: str):
        self.path = Path(path)
        self.lock_path = self.path.with_name(self.path.name + ".lock")
        self._lock_file: Optional[IO[str]] = None

    def load(self) -> Optional[Checkpoint]:
        """
        Load the checkpoint.

        Returns:
            The checkpoint, or None if there is none (or it is unreadable)
        """
        if not self.path.exists():
            checkpoint_loads_total.labels(status='not_found').inc()
            logger.debug(f"No checkpoint file at {self.path}")
            return None

        try:
            with self.path.open('r', encoding='utf-8') as f:
                data = json.load(f)
            checkpoint = Checkpoint.from_dict(data)
        except (OSError, ValueError, TypeError, KeyError) as e:
            checkpoint_loads_total.labels(status='invalid').inc()
            logger.error(
                f"Failed to load checkpoint: {e}",
                extra={"path": str(self.path)}
            )
            return None

        checkpoint_loads_total.labels(status='success').inc()
        logger.debug(
            "Loaded checkpoint",
            extra={"path": str(self.path), "checkpoint_time": checkpoint.timestamp.isoformat()}
        )
        return checkpoint

    def save(self, checkpoint: Checkpoint) -> None:
        """
        Atomically replace the checkpoint file.

        Raises:
            CheckpointError: If the file cannot be written
        """
        directory = self.path.parent
        tmp_name = None
        try:
            directory.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(prefix=f".{self.path.name}.", suffix=".tmp", dir=directory)
            with os.fdopen(fd, 'w', encoding='utf-8') as f:
                json.dump(checkpoint.to_dict(), f, indent=2)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_name, self.path)
            tmp_name = None
            self._fsync_directory(directory)
        except OSError as e:
            checkpoint_saves_total.labels(status='error').inc()
            logger.error(
                f"Failed to save checkpoint: {e}",
                extra={"path": str(self.path)}
            )
            raise CheckpointError(f"Failed to write checkpoint {self.path}: {e}") from e
        finally:
            if tmp_name is not None:
                try:
                    os.unlink(tmp_name)
                except OSError as e:
                    logger.warning(f"Could not remove temporary checkpoint file {tmp_name}: {e}")

        checkpoint_saves_total.labels(status='success').inc()
        logger.debug("Checkpoint saved successfully", extra={"path": str(self.path)})

    @staticmethod
    def _fsync_directory(directory: Path) -> None:
        fd = os.open(directory, os.O_RDONLY)
        try:
            os.fsync(fd)
        finally:
            os.close(fd)

    def acquire(self) -> None:
        """
        Take an exclusive lock on <checkpoint>.lock for the life of the process.

        Raises:
            CheckpointLockedError: If another process holds the lock
        """
        if self._lock_file is not None:
            return
        self.lock_path.parent.mkdir(parents=True, exist_ok=True)
        lock_file = self.lock_path.open('a+', encoding='utf-8')
        try:
            fcntl.flock(lock_file.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
        except OSError as e:
            lock_file.close()
            raise CheckpointLockedError(
                f"Checkpoint {self.path} is owned by another replication process"
            ) from e
        lock_file.seek(0)
        lock_file.truncate()
        lock_file.write(str(os.getpid()))
        lock_file.flush()
        self._lock_file = lock_file
        logger.info("Acquired checkpoint lock", extra={"path": str(self.lock_path)})

    def release(self) -> None:
        if self._lock_file is None:
            return
        try:
            fcntl.flock(self._lock_file.fileno(), fcntl.LOCK_UN)
        finally:
            self._lock_file.close()
            self._lock_file = None


class CDCCheckpoint(Base):
    """
    CDC checkpoint row.

    Stores:
    - job_id: Job identifier
    - collection: MongoDB collection name
    - resume_token: MongoDB resume token (extended JSON), null before the first batch
    - checkpoint_time: When the position was confirmed
    - updated_at: Last update time
    """
    __tablename__ = "cdc_checkpoints"

    id = Column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True)
    job_id = Column(String(255), nullable=False, index=True)
    collection = Column(String(255), nullable=False, index=True)
    resume_token = Column(JSON, nullable=True)
    checkpoint_time = Column(DateTime, nullable=False)
    updated_at = Column(DateTime, nullable=False)

    __table_args__ = (
        UniqueConstraint('job_id', 'collection', name='uq_cdc_checkpoints_job_collection'),
    )


def _naive_utc(value: datetime) -> datetime:
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


class SQLCheckpointStore(CheckpointStore):
    """
    SQL-backed checkpoint store.

    Features:
    - ACID transactions
    - Automatic retry on transient failures
    - Connection pooling

    Example:
        >>> store = SQLCheckpointStore(database_url, job_id="report-sync", collection="users")
        >>> store.save(Checkpoint.now(resume_token))
        >>> store.load()
    """

    def __init__(self, database_url: str, job_id: str, collection: str):
        """
        Initialize checkpoint store.

        Args:
            database_url: SQLAlchemy connection URL
            job_id: Job identifier
            collection: Source collection name

        Raises:
            CheckpointError: If database connection fails
        """
        self.job_id = job_id
        self.collection = collection
        try:
            self.engine = create_engine(
                database_url,
                pool_pre_ping=True,  # Verify connections before using
                pool_recycle=3600,
                echo=False
            )
            self.SessionLocal = sessionmaker(
                bind=self.engine,
                autoflush=False
            )
            Base.metadata.create_all(self.engine)

            with self.engine.connect() as conn:
                conn.execute(text("SELECT 1"))

            logger.info("SQLCheckpointStore initialized successfully")

        except SQLAlchemyError as e:
            logger.error(f"Failed to initialize SQLCheckpointStore: {e}")
            raise CheckpointError(f"Database connection failed: {e}") from e

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=10),
        retry=retry_if_exception_type(OperationalError),
        reraise=True
    )
    def _save(self, checkpoint: Checkpoint) -> None:
        session: Session = self.SessionLocal()
        try:
            with session.begin():
                row = session.query(CDCCheckpoint).filter_by(
                    job_id=self.job_id,
                    collection=self.collection
                ).with_for_update().first()

                now = _naive_utc(datetime.now(timezone.utc))
                if row:
                    row.resume_token = token_to_json(checkpoint.resume_token)
                    row.checkpoint_time = _naive_utc(checkpoint.timestamp)
                    row.updated_at = now
                else:
                    session.add(CDCCheckpoint(
                        job_id=self.job_id,
                        collection=self.collection,
                        resume_token=token_to_json(checkpoint.resume_token),
                        checkpoint_time=_naive_utc(checkpoint.timestamp),
                        updated_at=now
                    ))
        finally:
            session.close()

    def save(self, checkpoint: Checkpoint) -> None:
        """
        Save checkpoint (upsert in one transaction).

        Raises:
            CheckpointError: If save fails after retries
        """
        try:
            self._save(checkpoint)
        except SQLAlchemyError as e:
            checkpoint_saves_total.labels(status='error').inc()
            logger.error(
                f"Database error saving checkpoint: {e}",
                extra={"job_id": self.job_id, "collection": self.collection}
            )
            raise CheckpointError(f"Database error: {e}") from e

        checkpoint_saves_total.labels(status='success').inc()
        logger.debug(
            f"Saved checkpoint for job {self.job_id}, collection {self.collection}",
            extra={"job_id": self.job_id, "collection": self.collection}
        )

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=10),
        retry=retry_if_exception_type(OperationalError),
        reraise=True
    )
    def _load(self) -> Optional[CDCCheckpoint]:
        session: Session = self.SessionLocal()
        try:
            row = session.query(CDCCheckpoint).filter_by(
                job_id=self.job_id,
                collection=self.collection
            ).first()
            if row is not None:
                session.expunge(row)
            return row
        finally:
            session.close()

    def load(self) -> Optional[Checkpoint]:
        """
        Load checkpoint for job+collection.

        Returns:
            Checkpoint if one exists, None otherwise

        Raises:
            CheckpointError: If load fails after retries
        """
        try:
            row = self._load()
        except SQLAlchemyError as e:
            checkpoint_loads_total.labels(status='error').inc()
            logger.error(
                f"Database error loading checkpoint: {e}",
                extra={"job_id": self.job_id, "collection": self.collection}
            )
            raise CheckpointError(f"Database error: {e}") from e

        if row is None:
            checkpoint_loads_total.labels(status='not_found').inc()
            logger.debug(
                f"No checkpoint found for job {self.job_id}, collection {self.collection}",
                extra={"job_id": self.job_id, "collection": self.collection}
            )
            return None

        try:
            token = token_from_json(row.resume_token)
        except (TypeError, ValueError) as e:
            checkpoint_loads_total.labels(status='invalid').inc()
            logger.warning(
                f"Invalid resume token in checkpoint: {e}",
                extra={"job_id": self.job_id, "collection": self.collection}
            )
            return None

        checkpoint_loads_total.labels(status='success').inc()
        return Checkpoint(
            resume_token=token,
            timestamp=row.checkpoint_time.replace(tzinfo=timezone.utc)
        )

    def close(self) -> None:
        """Close database connections."""
        super().close()
        if hasattr(self, 'engine'):
            self.engine.dispose()
            logger.info("SQLCheckpointStore connections closed")


def create_checkpoint_store(settings: Settings) -> CheckpointStore:
    """Build the configured checkpoint backend."""
    if settings.checkpoint.backend == "sql":
        return SQLCheckpointStore(
            settings.checkpoint.database_url,
            job_id=settings.checkpoint.job_id,
            collection=settings.source.collection
        )
    return FileCheckpointStore(settings.checkpoint.path)
