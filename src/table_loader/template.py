import logging
import re
from dataclasses import dataclass, field
from collections.abc import Mapping
from typing import Any, Dict, List, Optional, Sequence, Tuple

from sqlalchemy.sql.elements import TextClause

from table_loader.conversion import ConversionRegistry, convert_field
from table_loader.dialects import StandardDialect
from table_loader.errors import UnrecognizedColumnsError
from table_loader.metadata import ColumnDescriptor, ColumnMap, fold

log = logging.getLogger("table_loader.template")


@dataclass(frozen=True)
class LoadParameter:
    descriptor: ColumnDescriptor
    header_name: str
    param_name: str

    @property
    def column_name(self) -> str:
        return self.descriptor.name

    def extract(self, row: Mapping[str, Optional[str]], registry: ConversionRegistry, table_name: str = "") -> Any:
        return convert_field(self.descriptor, row.get(self.header_name), registry, table_name)


@dataclass(frozen=True)
class UpsertTemplate:
    table_name: str
    command_text: str
    parameters: Tuple[LoadParameter, ...]
    has_identity_columns: bool = False
    safe_load: bool = False
    key_parameters: Tuple[LoadParameter, ...] = ()
    statements: Dict[str, TextClause] = field(default_factory=dict, compare=False)

    def bind_values(self, row: Mapping[str, Optional[str]], registry: ConversionRegistry) -> Dict[str, Any]:
        return {p.param_name: p.extract(row, registry, self.table_name) for p in self.parameters}


def param_name_for(column_name: str, taken: set) -> str:
    name = re.sub(r"\W", "_", column_name, flags=re.ASCII) or "col"
    if name[0].isdigit():
        name = f"p_{name}"
    candidate, n = name, 1
    while fold(candidate) in taken:
        candidate = f"{name}_{n}"
        n += 1
    taken.add(fold(candidate))
    return candidate


def bind_parameters(table_name: str, columns: ColumnMap, headers: Sequence[str]) -> List[LoadParameter]:
    unmatched = [h for h in headers if h not in columns]
    if unmatched:
        raise UnrecognizedColumnsError(table_name, unmatched)

    seen: Dict[str, str] = {}
    duplicates = [h for h in headers if seen.setdefault(fold(columns[h].name), h) != h]
    if duplicates:
        raise UnrecognizedColumnsError(
            table_name,
            duplicates,
            f"File maps more than one header to the same column ({', '.join(duplicates)}).",
        )

    taken: set = set()
    return [
        LoadParameter(columns[h], h, param_name_for(columns[h].name, taken))
        for h in headers
    ]


def build_upsert_template(
    table_name: str,
    columns: ColumnMap,
    headers: Sequence[str],
    safe_load: bool,
    dialect: StandardDialect,
) -> UpsertTemplate:
    parameters = bind_parameters(table_name, columns, headers)
    by_column = {fold(p.column_name): p for p in parameters}

    # key predicate follows descriptor order, not header order
    key_parameters = []
    missing_keys = []
    for descriptor in columns.primary_key:
        param = by_column.get(fold(descriptor.name))
        if param is None:
            missing_keys.append(descriptor.name)
        else:
            key_parameters.append(param)

    if safe_load and missing_keys:
        raise UnrecognizedColumnsError(
            table_name,
            missing_keys,
            f"File is missing primary key columns ({', '.join(missing_keys)}) required to update.",
        )
    if safe_load and not key_parameters:
        log.warning(f"[{table_name}] Table has no primary key; records can only be inserted.")
        safe_load = False

    command_text, statements = dialect.render_upsert(
        table_name, parameters, key_parameters, safe_load
    )
    template = UpsertTemplate(
        table_name=table_name,
        command_text=command_text,
        parameters=tuple(parameters),
        has_identity_columns=any(p.descriptor.is_identity for p in parameters),
        safe_load=safe_load,
        key_parameters=tuple(key_parameters),
        statements=statements,
    )
    log.debug(f"[{table_name}] Upsert template:\n{command_text}")
    return template
