import logging
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from collections.abc import Mapping
from typing import Dict, Iterator, Optional, Tuple

import polars as pl
from sqlalchemy import text
from sqlalchemy.engine import Connection
from sqlalchemy.exc import SQLAlchemyError
from tqdm import tqdm

from table_loader.conversion import ConversionRegistry
from table_loader.dialects import StandardDialect
from table_loader.errors import ErrorKind, LoadError
from table_loader.metadata import resolve_columns
from table_loader.template import UpsertTemplate, build_upsert_template

log = logging.getLogger("table_loader.loader")


@dataclass
class LoadStatistics:
    total_records: int = 0
    records_created: int = 0
    records_updated: int = 0
    records_errored: int = 0

    def record(self, inserted: int, updated: int) -> None:
        self.records_created += inserted
        self.records_updated += updated

    def __str__(self) -> str:
        return (
            f"{self.records_created} Inserted, {self.records_updated} Updated, "
            f"{self.records_errored} Errored, {self.total_records} Total"
        )


def load_csv_with_polars(path: Path, delimiter: str = ",", encoding: str = "utf8") -> pl.DataFrame:
    # every field stays text; conversion is driven by the table schema
    df = pl.read_csv(
        path,
        separator=delimiter,
        has_header=True,
        infer_schema_length=0,
        encoding=encoding,
        raise_if_empty=False,
    )
    if df.width == 0:
        return df
    non_empty = pl.any_horizontal(pl.all().fill_null("").str.len_chars() > 0)
    return df.filter(non_empty)


def format_parameters(template: UpsertTemplate, values: Mapping[str, object]) -> str:
    lines = ["Parameters:", "Name\t\tValue"]
    for p in template.parameters:
        lines.append(f"@{p.param_name}\t\t'{values.get(p.param_name)}'")
    return "\n".join(lines)


def load_record(
    conn: Connection,
    row: Mapping[str, Optional[str]],
    template: UpsertTemplate,
    registry: ConversionRegistry,
    dialect: StandardDialect,
    statistics: LoadStatistics,
) -> Tuple[int, int]:
    values = template.bind_values(row, registry)
    try:
        counts = dialect.execute(conn, template, values)
    except SQLAlchemyError as e:
        details = f"Command: {template.command_text}\n{format_parameters(template, values)}"
        raise LoadError(
            f"Cannot process load record. {details}",
            ErrorKind.RECORD_FAILURE,
            template.table_name,
            e,
        ) from e

    if counts is None:
        return 0, 0
    statistics.record(*counts)
    return counts


def _toggle(conn: Connection, sql: Optional[str], what: str, table_name: str, enable: bool) -> None:
    if sql is None:
        log.debug(f"[{table_name}] {what} toggle not supported by this database; skipped.")
        return
    try:
        conn.execute(text(sql))
    except SQLAlchemyError as e:
        state = "enabled" if enable else "disabled"
        log.warning(
            f"{what} could not be {state} on table '{table_name}', data failures may occur. ({e})"
        )


@contextmanager
def relaxed_constraints(conn: Connection, template: UpsertTemplate, dialect: StandardDialect) -> Iterator[None]:
    """Disable constraint checks (and identity insert protection) for the file's duration."""
    table_name = template.table_name
    _toggle(conn, dialect.constraint_checks_sql(table_name, False), "Constraints", table_name, False)
    if template.has_identity_columns:
        _toggle(conn, dialect.identity_insert_sql(table_name, False), "Identity Insert", table_name, False)
    try:
        yield
    finally:
        _toggle(conn, dialect.constraint_checks_sql(table_name, True), "Constraints", table_name, True)
        if template.has_identity_columns:
            _toggle(conn, dialect.identity_insert_sql(table_name, True), "Identity Insert", table_name, True)


def load_file(
    conn: Connection,
    path: Path,
    safe_load: bool,
    registry: ConversionRegistry,
    dialect: StandardDialect,
    delimiter: str = ",",
    encoding: str = "utf8",
    progress: bool = True,
    table_name: Optional[str] = None,
) -> LoadStatistics:
    table_name = table_name or path.stem
    log.info(f"Loading file: {path.name} -> [{table_name}] ({'update' if safe_load else 'insert only'})")

    columns = resolve_columns(conn, table_name)
    df = load_csv_with_polars(path, delimiter=delimiter, encoding=encoding)
    template = build_upsert_template(table_name, columns, df.columns, safe_load, dialect)

    statistics = LoadStatistics()
    if df.height == 0:
        log.info(f"[{table_name}] File has no records.")
        return statistics

    rows: Iterator[Dict[str, Optional[str]]] = df.iter_rows(named=True)
    with relaxed_constraints(conn, template, dialect):
        for row in tqdm(rows, total=df.height, desc=table_name, unit="rec", disable=not progress):
            statistics.total_records += 1
            try:
                load_record(conn, row, template, registry, dialect, statistics)
            except Exception as e:
                log.error(f"Cannot load record {statistics.total_records}. Details: {e}")
                statistics.records_errored += 1

    log.info(f"[{table_name}] Statistics: {statistics}")
    return statistics
