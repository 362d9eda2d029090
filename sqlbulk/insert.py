import logging
from types import TracebackType
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple, Type, Union

from sqlalchemy import column, create_engine, table
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.sql.dml import Insert

from sqlbulk import EngineConfig
from sqlbulk.context import ExecutionContext, background
from sqlbulk.errors import (
    BulkInsertError,
    BulkInsertFailure,
    ExecutionError,
    InsertClosedError,
    StatementBuildError,
)

log = logging.getLogger("sqlbulk")

# SQLITE_MAX_VARIABLE_NUMBER: https://www.sqlite.org/limits.html
MAX_BOUND_PARAMS = 999

# register the bound parameter limit of a dialect by dialect name here
DialectBoundParams: Dict[str, int] = {}

# number of sqlite virtual machine instructions between two cancellation checks
_sqlite_progress_steps = 1000


def row_threshold(column_count: int, max_bound_params: int = MAX_BOUND_PARAMS) -> int:
    if column_count <= 0:
        raise ValueError("At least one column is required")
    return max_bound_params // column_count - 1


class BulkInsert:
    """
    Insert as many rows as possible per statement sent to the database.

    Rows are buffered until the bound parameter limit would be hit, then flushed as one multi-row INSERT.
    Failed flushes are recorded and reported by `finish`; the rows of a failed flush are dropped, not retried.
    """

    def __init__(
        self,
        db: Union[Engine, Connection],
        table_name: str,
        columns: Sequence[str],
        ctx: Optional[ExecutionContext] = None,
        max_bound_params: int = MAX_BOUND_PARAMS,
    ) -> None:
        self.db = db
        self.ctx = ctx or background()
        self.table_name = table_name
        self.columns: Tuple[str, ...] = tuple(columns)
        self.threshold = row_threshold(len(self.columns), max_bound_params)
        self.table = table(table_name, *[column(c) for c in self.columns])
        self.errors: List[BulkInsertFailure] = []
        self.rows = 0
        self.flushes = 0
        self.rows_inserted = 0
        self.rows_dropped = 0
        self.closed = False
        self.owns_engine = False
        self._pending: List[Tuple[Any, ...]] = []

    @property
    def pending(self) -> int:
        return self.rows

    def values(self, *values: Any) -> None:
        if self.closed:
            raise InsertClosedError(f"Bulk insert into {self.table_name} is already finished")
        self._pending.append(values)
        self.rows += 1

        if self.rows >= self.threshold:
            self._flush()

    def extend(self, rows: Iterable[Sequence[Any]]) -> None:
        for row in rows:
            self.values(*row)

    def finish(self) -> None:
        """
        Flush all remaining rows and raise a BulkInsertError if any flush of this insert failed.
        """
        if not self.closed:
            if self.rows > 0:
                self._flush()
            self.closed = True
            if self.owns_engine and isinstance(self.db, Engine):
                self.db.dispose()
            if self.errors:
                log.info(
                    f"Bulk insert into {self.table_name} finished with {len(self.errors)} errors. "
                    f"Inserted: {self.rows_inserted} Dropped: {self.rows_dropped}"
                )

        if self.errors:
            raise BulkInsertError(self.errors)

    def __enter__(self) -> "BulkInsert":
        return self

    def __exit__(
        self,
        exc_type: Optional[Type[BaseException]],
        exc_val: Optional[BaseException],
        exc_tb: Optional[TracebackType],
    ) -> None:
        if exc_type is None:
            self.finish()
        else:
            # do not hide the exception that is already on its way
            try:
                self.finish()
            except BulkInsertError as ex:
                log.warning(f"Bulk insert into {self.table_name} failed while handling another error: {ex}")

    def _flush(self) -> None:
        count = self.rows
        try:
            try:
                stmt = self._build()
            except Exception as ex:
                self._record(StatementBuildError(self.table_name, count, ex))
                return

            # drivers may raise plain python errors (e.g. OverflowError) that sqlalchemy does not wrap
            try:
                self._execute(stmt)
            except Exception as ex:
                self._record(ExecutionError(self.table_name, count, ex))
                return

            self.rows_inserted += count
            log.debug(f"Inserted {count} rows into {self.table_name}")
        finally:
            self.flushes += 1
            self._pending = []
            self.rows = 0

    def _build(self) -> Insert:
        converted: List[Dict[str, Any]] = []
        for row in self._pending:
            if len(row) != len(self.columns):
                raise ValueError(f"Expected {len(self.columns)} values but got {len(row)}: {row!r}")
            converted.append(dict(zip(self.columns, row)))
        stmt: Insert = self.table.insert().values(converted)
        return stmt

    def _execute(self, stmt: Insert) -> None:
        self.ctx.check()
        if isinstance(self.db, Connection):
            if self.db.in_transaction():
                # a savepoint per flush: a failed batch must not abort the caller's transaction
                with self.db.begin_nested():
                    self._execute_on(self.db, stmt)
            else:
                self._execute_on(self.db, stmt)
        else:
            with self.db.begin() as connection:
                self._execute_on(connection, stmt)

    def _execute_on(self, connection: Connection, stmt: Insert) -> None:
        dbapi_connection = connection.connection.dbapi_connection
        interruptible = connection.dialect.name == "sqlite" and hasattr(dbapi_connection, "set_progress_handler")
        if interruptible:
            # a non zero return value aborts the running sqlite statement
            dbapi_connection.set_progress_handler(  # type: ignore
                lambda: 0 if self.ctx.err() is None else 1, _sqlite_progress_steps
            )
        try:
            connection.execute(stmt)
        except Exception as ex:
            if (reason := self.ctx.err()) is not None:
                raise reason from ex
            raise
        finally:
            if interruptible:
                dbapi_connection.set_progress_handler(None, 0)  # type: ignore

    def _record(self, error: BulkInsertFailure) -> None:
        log.warning(f"Bulk insert into {self.table_name} failed: {error}")
        self.errors.append(error)
        self.rows_dropped += error.rows


def bulk_insert(
    db_access: Union[EngineConfig, Engine, Connection],
    table_name: str,
    columns: Sequence[str],
    ctx: Optional[ExecutionContext] = None,
    max_bound_params: Optional[int] = None,
) -> BulkInsert:
    """
    Create a BulkInsert for the given database access.
    An engine created from an EngineConfig is owned by the returned insert and disposed by `finish`.
    """
    db: Union[Engine, Connection]
    if isinstance(db_access, EngineConfig):
        db = create_engine(db_access.connection_string)
        limit = db_access.max_bound_params if max_bound_params is None else max_bound_params
    else:
        db = db_access
        if max_bound_params is None:
            limit = DialectBoundParams.get(db.dialect.name, MAX_BOUND_PARAMS)
        else:
            limit = max_bound_params
    log.debug(f"Dialect {db.dialect.name}: bulk insert into {table_name} with {limit} bound parameters")
    inserter = BulkInsert(db, table_name, columns, ctx, limit)
    inserter.owns_engine = isinstance(db_access, EngineConfig)
    return inserter
