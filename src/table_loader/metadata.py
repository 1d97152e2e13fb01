"""Column metadata resolution for a target table.

Columns are reflected first, then the primary key is resolved with a second
query and merged into the per-column descriptors.
"""

import logging
from collections.abc import Mapping
from dataclasses import dataclass, replace
from typing import Dict, Iterator, List

from sqlalchemy import inspect
from sqlalchemy.engine import Connection
from sqlalchemy.exc import DBAPIError, NoSuchTableError, SQLAlchemyError
from sqlalchemy.types import TypeEngine

from table_loader.errors import ErrorKind, LoadError

log = logging.getLogger("table_loader.metadata")

# SQL Server: "Invalid object name"
MSSQL_INVALID_OBJECT = 208


def fold(name: str) -> str:
    return name.casefold()


@dataclass(frozen=True)
class ColumnDescriptor:
    name: str
    python_type: type
    sql_type: TypeEngine
    is_primary_key: bool = False
    is_identity: bool = False
    max_length: int = 0
    nullable: bool = True

    @property
    def is_textual(self) -> bool:
        return self.python_type is str


class ColumnMap(Mapping):
    """Read-only, ordered mapping of column name to descriptor.

    Keys compare case-insensitively; iteration yields the table's own column
    names in table order.
    """

    def __init__(self, descriptors=()):
        self._items: Dict[str, ColumnDescriptor] = {}
        for descriptor in descriptors:
            self._items.setdefault(fold(descriptor.name), descriptor)

    def __getitem__(self, name: str) -> ColumnDescriptor:
        return self._items[fold(name)]

    def __contains__(self, name) -> bool:
        return isinstance(name, str) and fold(name) in self._items

    def __iter__(self) -> Iterator[str]:
        return (d.name for d in self._items.values())

    def __len__(self) -> int:
        return len(self._items)

    @property
    def primary_key(self) -> List[ColumnDescriptor]:
        return [d for d in self._items.values() if d.is_primary_key]

    def __repr__(self) -> str:
        return f"ColumnMap({list(self)!r})"


def python_type_for(sql_type: TypeEngine) -> type:
    try:
        return sql_type.python_type
    except NotImplementedError:
        # NullType and some vendor types have no python_type
        return str


def describe_column(column: dict) -> ColumnDescriptor:
    sql_type = column["type"]
    return ColumnDescriptor(
        name=column["name"],
        python_type=python_type_for(sql_type),
        sql_type=sql_type,
        is_identity=bool(column.get("identity")),
        max_length=getattr(sql_type, "length", None) or 0,
        nullable=bool(column.get("nullable", True)),
    )


def _is_missing_table(exc: SQLAlchemyError) -> bool:
    if isinstance(exc, NoSuchTableError):
        return True
    if isinstance(exc, DBAPIError) and exc.orig is not None:
        # pymssql reports (208, msg); pyodbc embeds "(208)" in the message
        args = getattr(exc.orig, "args", ())
        return any(
            arg == MSSQL_INVALID_OBJECT or f"({MSSQL_INVALID_OBJECT})" in str(arg)
            for arg in args[:2]
        )
    return False


def resolve_columns(conn: Connection, table_name: str) -> ColumnMap:
    try:
        inspector = inspect(conn)
        reflected = inspector.get_columns(table_name)
        if not reflected:
            raise NoSuchTableError(table_name)

        descriptors: Dict[str, ColumnDescriptor] = {}
        for column in reflected:
            key = fold(column["name"])
            if key in descriptors:
                log.debug(f"[{table_name}] Ignoring duplicate column '{column['name']}'.")
                continue
            descriptors[key] = describe_column(column)

        pk = inspector.get_pk_constraint(table_name) or {}
        for name in pk.get("constrained_columns") or []:
            key = fold(name)
            if key in descriptors:
                descriptors[key] = replace(descriptors[key], is_primary_key=True)
    except SQLAlchemyError as e:
        kind = ErrorKind.TABLE_NOT_FOUND if _is_missing_table(e) else ErrorKind.UNKNOWN
        raise LoadError("Cannot get metadata for table.", kind, table_name, e) from e

    columns = ColumnMap(descriptors.values())
    log.debug(
        f"[{table_name}] Resolved {len(columns)} columns, "
        f"primary key: {[d.name for d in columns.primary_key]}"
    )
    return columns
