"""
Document store over SQLAlchemy.

Keyed-collection CRUD/query/stream interface used by every chat-core
service. One table per collection (see models.py); records travel as plain
dicts that always carry their ``id``.
"""

import logging
import threading
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Iterator, Optional, Sequence, Tuple

from sqlalchemy import and_, create_engine, delete, insert, or_, select, text, update
from sqlalchemy.exc import IntegrityError, OperationalError, SQLAlchemyError
from sqlalchemy.orm import Session, declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

from tabchat.errors import DuplicateDocument, NotFound, StoreError, StoreUnavailable
from tabchat.metrics import record_store_retry

logger = logging.getLogger(__name__)

# Base class for SQLAlchemy models
Base = declarative_base()

# Error text that marks a failure as worth retrying
TRANSIENT_MARKERS = ("unavailable", "timeout", "timed out", "deadline-exceeded", "database is locked")

Filter = Tuple[str, str, Any]


def utcnow() -> datetime:
    """Naive UTC timestamp (what SQLite hands back)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def create_session_factory(database_url: str) -> Tuple[Any, sessionmaker]:
    """
    Create the SQLAlchemy engine and session factory for a database URL.

    check_same_thread=False is required for SQLite because background tasks
    run on worker threads. In-memory SQLite shares one connection.
    """
    connect_args = {}
    kwargs = {}
    if database_url.startswith("sqlite"):
        connect_args = {"check_same_thread": False, "timeout": 30}
        if ":memory:" in database_url or database_url.rstrip("/") == "sqlite:":
            kwargs["poolclass"] = StaticPool

    engine = create_engine(database_url, connect_args=connect_args, echo=False, **kwargs)
    session_factory = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    return engine, session_factory


def is_transient(exc: BaseException) -> bool:
    """Unavailable/timeout/deadline-exceeded style errors are retryable."""
    if isinstance(exc, OperationalError) and exc.connection_invalidated:
        return True
    message = str(exc).lower()
    return any(marker in message for marker in TRANSIENT_MARKERS)


@dataclass(frozen=True)
class Increment:
    """Update value that atomically adds ``amount`` to the stored field."""
    amount: int = 1


@dataclass
class BatchOp:
    """One operation of an atomic batch: kind is create, update or delete."""
    kind: str
    collection: str
    id: Optional[str] = None
    data: dict = field(default_factory=dict)

    @classmethod
    def create(cls, collection: str, data: dict, id: Optional[str] = None) -> "BatchOp":
        return cls("create", collection, id, dict(data))

    @classmethod
    def update(cls, collection: str, id: str, data: dict) -> "BatchOp":
        return cls("update", collection, id, dict(data))

    @classmethod
    def delete(cls, collection: str, id: str) -> "BatchOp":
        return cls("delete", collection, id)


class DocumentStore:
    """
    Collection-level CRUD over SQLAlchemy.

    - create: stamps created_at/updated_at, retries transient failures
    - get / query / update / delete
    - increment: atomic add-and-return for counters
    - batch: all-or-nothing multi-op transaction
    - subscribe: polling stream of full snapshots
    """

    def __init__(
        self,
        session_factory: sessionmaker,
        max_attempts: int = 3,
        backoff_seconds: float = 2.0,
        poll_seconds: float = 0.5,
        sleep: Callable[[float], None] = time.sleep,
    ):
        # Import models to register them with Base.metadata
        from tabchat.models import COLLECTIONS

        self._collections = COLLECTIONS
        self._session_factory = session_factory
        self.max_attempts = max(1, max_attempts)
        self.backoff_seconds = backoff_seconds
        self.poll_seconds = poll_seconds
        self._sleep = sleep

    # -------------------------------------------------------------------------
    # Schema / health
    # -------------------------------------------------------------------------

    def init_db(self) -> None:
        """
        Initialize the database by creating all tables.
        Called during application startup.
        """
        engine = self._session_factory.kw["bind"]
        logger.debug("Creating database tables...")
        try:
            Base.metadata.create_all(bind=engine)
            logger.info("Database initialized successfully")
        except Exception as e:
            logger.error(f"Failed to initialize database: {e}")
            raise

    def check_health(self) -> bool:
        """
        Check if the database is reachable.

        Returns:
            True if a trivial query succeeds, False otherwise.
        """
        logger.debug("Checking database health...")
        try:
            with self._session_factory() as session:
                session.execute(text("SELECT 1"))
            return True
        except Exception as e:
            logger.error(f"Database health check failed: {e}")
            return False

    # -------------------------------------------------------------------------
    # Record mapping
    # -------------------------------------------------------------------------

    def _model(self, collection: str):
        try:
            return self._collections[collection]
        except KeyError:
            raise ValueError(f"Unknown collection: {collection}")

    def _to_record(self, row) -> dict:
        model = type(row)
        array_fields = getattr(model, "__array_fields__", {})
        hidden = {col for cols in array_fields.values() for col in cols}
        record = {
            column.name: getattr(row, column.name)
            for column in model.__table__.columns
            if column.name not in hidden
        }
        for name, cols in array_fields.items():
            record[name] = [getattr(row, col) for col in cols]
        return record

    def _to_columns(self, model, data: dict) -> dict:
        array_fields = getattr(model, "__array_fields__", {})
        columns = {}
        for key, value in data.items():
            if key in array_fields:
                cols = array_fields[key]
                if len(value) != len(cols):
                    raise ValueError(f"{key} expects {len(cols)} values")
                columns.update(zip(cols, value))
            elif key in model.__table__.columns:
                if isinstance(value, Increment):
                    value = getattr(model, key) + value.amount
                columns[key] = value
            else:
                raise ValueError(f"Unknown field for {model.__tablename__}: {key}")
        return columns

    def _clause(self, model, flt: Filter):
        field_name, op, value = flt
        array_fields = getattr(model, "__array_fields__", {})

        if field_name in array_fields:
            cols = [getattr(model, c) for c in array_fields[field_name]]
            if op == "array-contains":
                return or_(*(c == value for c in cols))
            if op == "array-contains-any":
                return or_(*(c.in_(list(value)) for c in cols))
            if op == "==":
                return and_(*(c == v for c, v in zip(cols, value)))
            raise ValueError(f"Operator {op!r} not supported on array field {field_name}")

        if field_name not in model.__table__.columns:
            raise ValueError(f"Unknown field for {model.__tablename__}: {field_name}")
        col = getattr(model, field_name)

        if op == "==":
            return col.is_(None) if value is None else col == value
        if op == "!=":
            return col.is_not(None) if value is None else col != value
        if op == "<":
            return col < value
        if op == "<=":
            return col <= value
        if op == ">":
            return col > value
        if op == ">=":
            return col >= value
        if op == "in":
            return col.in_(list(value))
        if op == "not-in":
            return col.not_in(list(value))
        raise ValueError(f"Unsupported filter operator: {op}")

    # -------------------------------------------------------------------------
    # Error translation
    # -------------------------------------------------------------------------

    def _execute(self, collection: str, action: str, fn: Callable[[Session], Any]):
        """Run ``fn`` inside one transaction, translating store errors."""
        try:
            with self._session_factory() as session:
                with session.begin():
                    return fn(session)
        except IntegrityError as e:
            logger.info(f"Uniqueness constraint rejected {action} on {collection}")
            raise DuplicateDocument(f"{action} on {collection} violates a uniqueness constraint") from e
        except SQLAlchemyError as e:
            if is_transient(e):
                raise StoreUnavailable(f"{action} on {collection} failed: {e}") from e
            logger.error(f"Store error during {action} on {collection}: {e}")
            raise StoreError(f"{action} on {collection} failed: {e}") from e

    # -------------------------------------------------------------------------
    # Write Operations
    # -------------------------------------------------------------------------

    def create(self, collection: str, data: dict, id: Optional[str] = None) -> str:
        """
        Create a document, retrying transient failures.

        Retries up to max_attempts with backoff ``attempt * backoff_seconds``
        only when the error looks transient; everything else fails at once.

        Returns:
            The document id (generated when not supplied)

        Raises:
            DuplicateDocument: a uniqueness constraint rejected the row
            StoreUnavailable: transient failures exhausted the retry budget
        """
        model = self._model(collection)
        doc_id = id or uuid.uuid4().hex
        now = utcnow()
        columns = self._to_columns(model, data)
        columns.update(id=doc_id, created_at=now, updated_at=now)

        def _insert(session: Session) -> None:
            session.execute(insert(model).values(**columns))

        self._with_retry(collection, "create", _insert)
        logger.debug(f"Document created in {collection}: {doc_id}")
        return doc_id

    def _with_retry(self, collection: str, action: str, fn: Callable[[Session], Any]):
        """Run a document-creating write, retrying transient failures only."""
        for attempt in range(1, self.max_attempts + 1):
            logger.debug(f"{action} on {collection} (attempt {attempt}/{self.max_attempts})")
            try:
                return self._execute(collection, action, fn)
            except StoreUnavailable as e:
                if attempt >= self.max_attempts:
                    logger.error(f"Giving up on {action} in {collection} after {attempt} attempts: {e}")
                    raise
                wait = attempt * self.backoff_seconds
                record_store_retry(collection)
                logger.warning(f"Transient error during {action} on {collection}, retrying in {wait}s: {e}")
                self._sleep(wait)
        raise StoreUnavailable(f"{action} on {collection} failed")  # pragma: no cover

    def update(self, collection: str, id: str, data: dict, where: Sequence[Filter] = ()) -> bool:
        """
        Partially update a document.

        Values may be ``Increment`` for an atomic server-side add. ``where``
        filters make the write conditional: it only applies when the stored
        document still matches them, checked in the same statement.

        Returns:
            True if the document existed and matched, False otherwise
        """
        model = self._model(collection)
        columns = self._to_columns(model, data)
        columns["updated_at"] = utcnow()
        conditions = [self._clause(model, f) for f in where]

        def _update(session: Session) -> bool:
            result = session.execute(
                update(model).where(model.id == id, *conditions).values(**columns),
                execution_options={"synchronize_session": False},
            )
            return result.rowcount > 0

        return self._execute(collection, "update", _update)

    def increment(self, collection: str, id: str, field_name: str, by: int = 1) -> int:
        """
        Atomically add ``by`` to a numeric field and return the new value.

        Raises:
            NotFound: if the document does not exist
        """
        model = self._model(collection)
        col = getattr(model, field_name)

        def _increment(session: Session) -> Optional[int]:
            return session.execute(
                update(model)
                .where(model.id == id)
                .values({field_name: col + by, "updated_at": utcnow()})
                .returning(col),
                execution_options={"synchronize_session": False},
            ).scalar_one_or_none()

        value = self._execute(collection, "increment", _increment)
        if value is None:
            raise NotFound(collection, id)
        return int(value)

    def delete(self, collection: str, id: str) -> bool:
        """Delete a document. Returns False if it did not exist."""
        model = self._model(collection)

        def _delete(session: Session) -> bool:
            result = session.execute(delete(model).where(model.id == id))
            return result.rowcount > 0

        return self._execute(collection, "delete", _delete)

    def batch(self, ops: Sequence[BatchOp]) -> bool:
        """
        Apply create/update/delete operations as a single atomic unit.

        Any failure (including an update of a missing document) rolls the
        whole batch back. Batches that create documents follow the same
        retry policy as create().
        """
        if not ops:
            return True

        def _apply(session: Session) -> bool:
            now = utcnow()
            for op in ops:
                model = self._model(op.collection)
                if op.kind == "create":
                    columns = self._to_columns(model, op.data)
                    columns.update(id=op.id or uuid.uuid4().hex, created_at=now, updated_at=now)
                    session.execute(insert(model).values(**columns))
                elif op.kind == "update":
                    columns = self._to_columns(model, op.data)
                    columns["updated_at"] = now
                    result = session.execute(
                        update(model).where(model.id == op.id).values(**columns),
                        execution_options={"synchronize_session": False},
                    )
                    if result.rowcount == 0:
                        raise NotFound(op.collection, str(op.id))
                elif op.kind == "delete":
                    session.execute(delete(model).where(model.id == op.id))
                else:
                    raise ValueError(f"Unknown batch operation: {op.kind}")
            return True

        logger.debug(f"Committing batch of {len(ops)} operations")
        if any(op.kind == "create" for op in ops):
            return self._with_retry("batch", "batch", _apply)
        return self._execute("batch", "batch", _apply)

    # -------------------------------------------------------------------------
    # Read Operations
    # -------------------------------------------------------------------------

    def get(self, collection: str, id: str) -> Optional[dict]:
        """Read a single document by id, or None."""
        model = self._model(collection)

        def _get(session: Session) -> Optional[dict]:
            row = session.get(model, id)
            return self._to_record(row) if row is not None else None

        return self._execute(collection, "get", _get)

    def query(
        self,
        collection: str,
        filters: Sequence[Filter] = (),
        order_by: Optional[str] = None,
        descending: bool = False,
        limit: Optional[int] = None,
    ) -> list:
        """
        Read documents matching every filter.

        Args:
            collection: Collection name
            filters: (field, op, value) triples; ops are ==, !=, <, <=, >, >=,
                array-contains, array-contains-any, in, not-in
            order_by: Field to order by (optional)
            descending: Order direction
            limit: Maximum number of documents (optional)
        """
        model = self._model(collection)
        stmt = select(model).where(*(self._clause(model, f) for f in filters))
        if order_by is not None:
            col = getattr(model, order_by)
            stmt = stmt.order_by(col.desc() if descending else col.asc(), model.id.asc())
        if limit is not None:
            stmt = stmt.limit(limit)
        logger.debug(f"Query on {collection}: filters={list(filters)}, order_by={order_by}, limit={limit}")

        def _query(session: Session) -> list:
            return [self._to_record(row) for row in session.scalars(stmt).all()]

        return self._execute(collection, "query", _query)

    def subscribe(
        self,
        collection: str,
        filters: Sequence[Filter] = (),
        order_by: Optional[str] = None,
        descending: bool = False,
    ) -> "Subscription":
        """Live stream of full snapshots for a filtered query."""
        return Subscription(self, collection, list(filters), order_by, descending, self.poll_seconds)


class Subscription:
    """
    Lazy, infinite sequence of full-snapshot collection states.

    The first snapshot is produced immediately; afterwards a snapshot is
    produced only when the result set changes. ``close()`` ends iteration.
    Subscribing again restarts from a fresh snapshot.
    """

    def __init__(
        self,
        store: DocumentStore,
        collection: str,
        filters: list,
        order_by: Optional[str],
        descending: bool,
        poll_seconds: float,
    ):
        self._store = store
        self._collection = collection
        self._filters = filters
        self._order_by = order_by
        self._descending = descending
        self._poll_seconds = poll_seconds
        self._closed = threading.Event()
        self._last: Optional[list] = None

    def __iter__(self) -> Iterator[list]:
        return self

    def __next__(self) -> list:
        while not self._closed.is_set():
            snapshot = self._store.query(
                self._collection, self._filters, self._order_by, self._descending
            )
            if self._last is None or snapshot != self._last:
                self._last = snapshot
                return snapshot
            self._closed.wait(self._poll_seconds)
        raise StopIteration

    def close(self) -> None:
        self._closed.set()

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    def __enter__(self) -> "Subscription":
        return self

    def __exit__(self, *exc) -> None:
        self.close()
