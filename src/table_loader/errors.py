from enum import Enum
from typing import Iterable, Optional


class ErrorKind(Enum):
    UNKNOWN = "unknown"
    TABLE_NOT_FOUND = "table_not_found"
    RECORD_FAILURE = "record_failure"
    VALUE_CONVERSION = "value_conversion"
    UNRECOGNIZED_COLUMNS = "unrecognized_columns"


class ConfigurationError(Exception):
    """Required settings are missing or invalid; raised before any loading."""


class LoadError(Exception):
    """A failed load operation, tagged with its table and classification."""

    def __init__(
        self,
        message: str,
        kind: ErrorKind,
        table_name: str,
        cause: Optional[BaseException] = None,
    ):
        super().__init__(message)
        self.kind = kind
        self.table_name = table_name
        self.cause = cause

    @property
    def database_details(self) -> str:
        # DBAPIError keeps the driver's own exception on .orig
        orig = getattr(self.cause, "orig", None)
        if orig is None:
            return ""
        return "\n".join(str(arg) for arg in getattr(orig, "args", (orig,)))

    def __str__(self) -> str:
        text = f"{self.args[0]}\nTableName: {self.table_name}"
        details = self.database_details
        if details:
            text += f"\nDatabase errors:\n{details}"
        elif self.cause is not None:
            text += f"\nCause: {self.cause}"
        return text


class UnrecognizedColumnsError(LoadError):
    def __init__(self, table_name: str, columns: Iterable[str], message: str = ""):
        self.columns = list(columns)
        message = message or (
            f"File contains columns ({', '.join(self.columns)}) that are not in the table."
        )
        super().__init__(message, ErrorKind.UNRECOGNIZED_COLUMNS, table_name)
