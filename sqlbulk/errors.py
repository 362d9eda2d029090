from typing import List, Optional


class SqlBulkError(Exception):
    pass


class InsertClosedError(SqlBulkError):
    pass


class ContextCancelled(SqlBulkError):
    pass


class DeadlineExceeded(ContextCancelled):
    pass


class BulkInsertFailure(SqlBulkError):
    """
    A single failed flush. The rows of the flush are not retried: `rows` holds how many were dropped.
    """

    def __init__(self, table: str, rows: int, cause: Optional[BaseException] = None) -> None:
        self.table = table
        self.rows = rows
        self.cause = cause
        super().__init__(f"{type(self).__name__} on {table} ({rows} rows dropped): {cause!r}")


class StatementBuildError(BulkInsertFailure):
    pass


class ExecutionError(BulkInsertFailure):
    pass


class BulkInsertError(SqlBulkError):
    def __init__(self, errors: List[BulkInsertFailure]) -> None:
        self.errors = list(errors)
        super().__init__(f"{len(self.errors)} errors: {self.errors!r}")

    @property
    def rows_dropped(self) -> int:
        return sum(e.rows for e in self.errors)
