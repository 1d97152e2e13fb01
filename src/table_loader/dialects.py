"""Database-specific rendering and execution of upsert templates.

SQL Server receives the whole upsert as one T-SQL batch that selects back the
insert/update counts. Other engines cannot branch inside a plain statement, so
they receive the same probe/insert/update logic as separate statements run in
order on the same connection.
"""

from typing import Dict, Optional, Sequence, Tuple

from sqlalchemy import bindparam, text
from sqlalchemy.engine import Connection, Dialect
from sqlalchemy.sql.elements import TextClause

Counts = Tuple[int, int]


class StandardDialect:
    name = "standard"

    def __init__(self, sa_dialect: Dialect):
        self.sa_dialect = sa_dialect
        self.preparer = sa_dialect.identifier_preparer

    def quote(self, name: str) -> str:
        return self.preparer.quote_identifier(name)

    def key_predicate(self, key_parameters: Sequence) -> str:
        return " AND ".join(
            f"{self.quote(p.column_name)} = :{p.param_name}" for p in key_parameters
        )

    def column_list(self, parameters: Sequence) -> str:
        return ",".join(self.quote(p.column_name) for p in parameters)

    def value_list(self, parameters: Sequence) -> str:
        return ",".join(f":{p.param_name}" for p in parameters)

    def set_list(self, parameters: Sequence) -> str:
        return ", ".join(f"{self.quote(p.column_name)} = :{p.param_name}" for p in parameters)

    @staticmethod
    def typed(sql: str, parameters: Sequence) -> TextClause:
        return text(sql).bindparams(
            *[bindparam(p.param_name, type_=p.descriptor.sql_type) for p in parameters]
        )

    def render_upsert(
        self, table_name: str, parameters: Sequence, key_parameters: Sequence, safe_load: bool
    ) -> Tuple[str, Dict[str, TextClause]]:
        table = self.quote(table_name)
        predicate = self.key_predicate(key_parameters)
        statements: Dict[str, TextClause] = {}
        rendered = []

        if safe_load:
            probe = f"SELECT 1 FROM {table} WHERE {predicate}"
            statements["probe"] = self.typed(probe, key_parameters)
            rendered.append(probe)

        insert = (
            f"INSERT INTO {table}\n({self.column_list(parameters)})\n"
            f"VALUES\n({self.value_list(parameters)})"
        )
        statements["insert"] = self.typed(insert, parameters)
        rendered.append(insert)

        if safe_load:
            update_columns = [p for p in parameters if not p.descriptor.is_primary_key]
            if update_columns:
                update = (
                    f"UPDATE {table}\nSET {self.set_list(update_columns)}\nWHERE {predicate}"
                )
                statements["update"] = self.typed(update, [*update_columns, *key_parameters])
                rendered.append(update)
            else:
                rendered.append("-- UPDATE: no columns outside the primary key")

        return ";\n".join(rendered), statements

    def execute(self, conn: Connection, template, values: Dict) -> Optional[Counts]:
        statements = template.statements
        if "probe" in statements:
            keys = {p.param_name: values[p.param_name] for p in template.key_parameters}
            if conn.execute(statements["probe"], keys).first() is not None:
                if "update" in statements:
                    conn.execute(statements["update"], values)
                return 0, 1
        conn.execute(statements["insert"], values)
        return 1, 0

    def constraint_checks_sql(self, table_name: str, enable: bool) -> Optional[str]:
        if self.sa_dialect.name == "sqlite":
            return f"PRAGMA foreign_keys = {'ON' if enable else 'OFF'}"
        if self.sa_dialect.name in ("mysql", "mariadb"):
            return f"SET FOREIGN_KEY_CHECKS = {1 if enable else 0}"
        if self.sa_dialect.name == "postgresql":
            action = "ENABLE" if enable else "DISABLE"
            return f"ALTER TABLE {self.quote(table_name)} {action} TRIGGER ALL"
        return None

    def identity_insert_sql(self, table_name: str, enable: bool) -> Optional[str]:
        return None


class SqlServerDialect(StandardDialect):
    name = "mssql"

    def render_upsert(
        self, table_name: str, parameters: Sequence, key_parameters: Sequence, safe_load: bool
    ) -> Tuple[str, Dict[str, TextClause]]:
        table = self.quote(table_name)
        predicate = self.key_predicate(key_parameters)

        lines = [
            "SET NOCOUNT ON",
            "DECLARE @RecordExists AS bit = 0",
            "DECLARE @InsertedRecords AS int = 0",
            "DECLARE @UpdatedRecords AS int = 0",
        ]
        if safe_load:
            lines += [
                f"SELECT @RecordExists = 1 FROM {table} WHERE {predicate}",
                "IF (@RecordExists = 0)",
                "BEGIN",
            ]
        lines += [
            f"INSERT INTO {table}",
            f"({self.column_list(parameters)})",
            "VALUES",
            f"({self.value_list(parameters)})",
            "",
            "SET @InsertedRecords = 1",
        ]
        if safe_load:
            lines.append("END")
            lines += ["ELSE", "BEGIN"]
            update_columns = [p for p in parameters if not p.descriptor.is_primary_key]
            if update_columns:
                lines += [
                    f"UPDATE {table}",
                    f"SET {self.set_list(update_columns)}",
                    f"WHERE {predicate}",
                ]
            lines += ["SET @UpdatedRecords = 1", "END"]
        lines.append("SELECT @InsertedRecords AS InsertedRecords, @UpdatedRecords AS UpdatedRecords")

        command = "\n".join(lines) + "\n"
        return command, {"upsert": self.typed(command, parameters)}

    def execute(self, conn: Connection, template, values: Dict) -> Optional[Counts]:
        result = conn.execute(template.statements["upsert"], values)
        if not result.returns_rows:
            return None
        row = result.first()
        if row is None:
            return None
        return int(row[0]), int(row[1])

    def constraint_checks_sql(self, table_name: str, enable: bool) -> Optional[str]:
        return f"ALTER TABLE {self.quote(table_name)} {'' if enable else 'NO'}CHECK CONSTRAINT ALL"

    def identity_insert_sql(self, table_name: str, enable: bool) -> Optional[str]:
        # identity insert is permitted while the identity constraint is relaxed
        return f"SET IDENTITY_INSERT {self.quote(table_name)} {'OFF' if enable else 'ON'}"


def dialect_for(conn_or_dialect) -> StandardDialect:
    sa_dialect = getattr(conn_or_dialect, "dialect", conn_or_dialect)
    if sa_dialect.name == "mssql":
        return SqlServerDialect(sa_dialect)
    return StandardDialect(sa_dialect)
