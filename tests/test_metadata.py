import datetime

import pytest
from sqlalchemy.exc import OperationalError
from sqlalchemy.types import Integer, String

from table_loader import metadata
from table_loader.errors import ErrorKind, LoadError
from table_loader.metadata import ColumnDescriptor, ColumnMap, resolve_columns


def test_resolves_employee_columns(conn):
    columns = resolve_columns(conn, "Employee")

    assert list(columns) == ["Id", "Name", "HireDate"]
    assert columns["id"] is columns["ID"]
    assert columns["Id"].is_primary_key
    assert not columns["Id"].nullable
    assert columns["Id"].python_type is int

    name = columns["name"]
    assert name.max_length == 5
    assert name.nullable
    assert name.is_textual
    assert not name.is_primary_key

    assert columns["HireDate"].python_type is datetime.date
    assert columns["HireDate"].max_length == 0


def test_primary_key_follows_column_order(conn):
    columns = resolve_columns(conn, "Shift")
    assert [d.name for d in columns.primary_key] == ["EmployeeId", "Day"]
    assert not columns["StartTime"].is_primary_key


def test_table_without_primary_key(conn):
    columns = resolve_columns(conn, "AuditLog")
    assert columns.primary_key == []
    assert columns["message"].max_length == 0


def test_missing_table(conn):
    with pytest.raises(LoadError) as info:
        resolve_columns(conn, "NoSuchTable")
    assert info.value.kind is ErrorKind.TABLE_NOT_FOUND
    assert info.value.table_name == "NoSuchTable"
    assert info.value.cause is not None


class FailingInspector:
    def __init__(self, error):
        self.error = error

    def get_columns(self, table_name):
        raise self.error


def test_sql_server_invalid_object_is_table_not_found(monkeypatch):
    error = OperationalError(
        "SELECT", {}, Exception("42S02", "[42S02] Invalid object name 'Nope'. (208) (SQLExecDirectW)")
    )
    monkeypatch.setattr(metadata, "inspect", lambda conn: FailingInspector(error))
    with pytest.raises(LoadError) as info:
        resolve_columns(object(), "Nope")
    assert info.value.kind is ErrorKind.TABLE_NOT_FOUND


def test_other_database_errors_are_unknown(monkeypatch):
    error = OperationalError("SELECT", {}, Exception("HYT00", "Login timeout expired"))
    monkeypatch.setattr(metadata, "inspect", lambda conn: FailingInspector(error))
    with pytest.raises(LoadError) as info:
        resolve_columns(object(), "Employee")
    err = info.value
    assert err.kind is ErrorKind.UNKNOWN
    assert err.table_name == "Employee"
    assert "Login timeout expired" in str(err)


def test_column_map_first_occurrence_wins():
    first = ColumnDescriptor("Code", str, String(3), max_length=3)
    second = ColumnDescriptor("CODE", int, Integer())
    columns = ColumnMap([first, second])
    assert len(columns) == 1
    assert columns["code"] is first
    assert "cOdE" in columns
    assert 1 not in columns
