from typing import Any, Iterator, List, Tuple

from pytest import fixture
from sqlalchemy import Column, Integer, MetaData, String, Table, create_engine, event
from sqlalchemy.engine import Engine


class ExecutionRecorder:
    def __init__(self) -> None:
        self.inserts: List[Tuple[str, Any]] = []

    def record(self, conn: Any, cursor: Any, statement: str, parameters: Any, context: Any, executemany: bool) -> None:
        if statement.lstrip().upper().startswith("INSERT"):
            self.inserts.append((statement, parameters))

    @property
    def count(self) -> int:
        return len(self.inserts)


@fixture
def engine() -> Iterator[Engine]:
    engine = create_engine("sqlite:///:memory:")

    # let sqlalchemy emit BEGIN itself, pysqlite would otherwise break savepoints
    @event.listens_for(engine, "connect")
    def do_connect(dbapi_connection: Any, connection_record: Any) -> None:
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def do_begin(conn: Any) -> None:
        conn.exec_driver_sql("BEGIN")

    metadata = MetaData()
    Table("keyed", metadata, Column("id", Integer, primary_key=True))
    Table("pairs", metadata, Column("a", Integer), Column("b", Integer))
    Table("singles", metadata, Column("a", Integer))
    Table("people", metadata, Column("name", String(64)), Column("age", Integer), Column("city", String(64)))
    metadata.create_all(engine)
    yield engine
    engine.dispose()


@fixture
def executions(engine: Engine) -> Iterator[ExecutionRecorder]:
    recorder = ExecutionRecorder()
    listener = recorder.record
    event.listen(engine, "before_cursor_execute", listener)
    yield recorder
    event.remove(engine, "before_cursor_execute", listener)
