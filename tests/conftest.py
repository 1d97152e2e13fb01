import sqlite3

import pytest
from sqlalchemy import create_engine

from table_loader.conversion import build_registry
from table_loader.dialects import dialect_for

SCHEMA = [
    """
    CREATE TABLE Employee (
        Id INTEGER NOT NULL PRIMARY KEY,
        Name VARCHAR(5),
        HireDate DATE
    )
    """,
    """
    CREATE TABLE Shift (
        EmployeeId INTEGER NOT NULL,
        Day DATE NOT NULL,
        StartTime TIME,
        Hours INTEGER NOT NULL,
        Note TEXT,
        PRIMARY KEY (Day, EmployeeId)
    )
    """,
    """
    CREATE TABLE AuditLog (
        Message TEXT
    )
    """,
]


@pytest.fixture
def db_path(tmp_path):
    return tmp_path / "data_test.db"


@pytest.fixture
def db_url(db_path):
    engine = create_engine(f"sqlite:///{db_path}")
    with engine.begin() as conn:
        for ddl in SCHEMA:
            conn.exec_driver_sql(ddl)
    engine.dispose()
    return f"sqlite:///{db_path}"


@pytest.fixture
def conn(db_url):
    engine = create_engine(db_url)
    with engine.connect() as connection:
        yield connection.execution_options(isolation_level="AUTOCOMMIT")
    engine.dispose()


@pytest.fixture
def dialect(conn):
    return dialect_for(conn)


@pytest.fixture
def registry():
    return build_registry()


@pytest.fixture
def fetch(db_path):
    def _fetch(sql):
        connection = sqlite3.connect(db_path)
        try:
            return connection.execute(sql).fetchall()
        finally:
            connection.close()

    return _fetch


@pytest.fixture
def write_csv(tmp_path):
    def _write(relative, content):
        path = tmp_path / relative
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content, encoding="utf-8")
        return path

    return _write
