import datetime
import uuid
from decimal import Decimal
from typing import Any, Callable, Dict, Optional

import pandas as pd

from table_loader.errors import ErrorKind, LoadError
from table_loader.metadata import ColumnDescriptor

Converter = Callable[[str], Any]

NULL_TOKEN = "null"
TRUE_TOKENS = {"true", "t", "yes", "y", "1"}
FALSE_TOKENS = {"false", "f", "no", "n", "0"}


def _require_text(text: Optional[str]) -> str:
    if text is None or not text.strip():
        raise ValueError("empty value")
    return text.strip()


def to_timestamp(text: Optional[str]) -> pd.Timestamp:
    ts = pd.to_datetime(_require_text(text))
    if pd.isna(ts):
        raise ValueError(f"'{text}' is not a date/time")
    return ts


def to_bool(text: Optional[str]) -> bool:
    token = _require_text(text).casefold()
    if token in TRUE_TOKENS:
        return True
    if token in FALSE_TOKENS:
        return False
    raise ValueError(f"'{text}' is not a boolean")


def to_time(text: Optional[str]) -> datetime.time:
    return datetime.time.fromisoformat(_require_text(text))


def to_timedelta(text: Optional[str]) -> datetime.timedelta:
    td = pd.to_timedelta(_require_text(text))
    if pd.isna(td):
        raise ValueError(f"'{text}' is not a duration")
    return td.to_pytimedelta()


DEFAULT_CONVERTERS: Dict[type, Converter] = {
    str: lambda text: text,
    int: lambda text: int(_require_text(text)),
    float: lambda text: float(_require_text(text)),
    Decimal: lambda text: Decimal(_require_text(text)),
    bool: to_bool,
    datetime.datetime: lambda text: to_timestamp(text).to_pydatetime(),
    datetime.date: lambda text: to_timestamp(text).date(),
    datetime.time: to_time,
    datetime.timedelta: to_timedelta,
    uuid.UUID: lambda text: uuid.UUID(_require_text(text)),
    bytes: lambda text: bytes.fromhex(_require_text(text)),
}


class ConversionRegistry:
    """Converters keyed by target python type."""

    def __init__(self, converters: Optional[Dict[type, Converter]] = None):
        self._converters: Dict[type, Converter] = dict(DEFAULT_CONVERTERS)
        if converters:
            self._converters.update(converters)

    def register(self, target: type, converter: Converter) -> None:
        self._converters[target] = converter

    def default_for(self, target: type) -> Converter:
        return DEFAULT_CONVERTERS.get(target, DEFAULT_CONVERTERS[str])

    def converter_for(self, target: type) -> Converter:
        converter = self._converters.get(target)
        if converter is not None:
            return converter
        # datetime is a subclass of date, so exact matches are tried first
        for registered, candidate in self._converters.items():
            if isinstance(target, type) and issubclass(target, registered):
                return candidate
        return self._converters[str]


def duration_converter(registry: ConversionRegistry, target: type) -> Converter:
    """Reads any timestamp text as a duration: only its time of day is kept."""
    fallback = registry.default_for(target)

    def convert(text: Optional[str]):
        if not text:
            return fallback(text)
        time_of_day = to_timestamp(text).time()
        if target is datetime.timedelta:
            return datetime.timedelta(
                hours=time_of_day.hour,
                minutes=time_of_day.minute,
                seconds=time_of_day.second,
                microseconds=time_of_day.microsecond,
            )
        return time_of_day

    return convert


def build_registry() -> ConversionRegistry:
    registry = ConversionRegistry()
    for target in (datetime.time, datetime.timedelta):
        registry.register(target, duration_converter(registry, target))
    return registry


def is_null_token(text: Optional[str]) -> bool:
    if text is None:
        return True
    stripped = text.strip()
    return not stripped or stripped.casefold() == NULL_TOKEN


def convert_field(
    descriptor: ColumnDescriptor,
    raw: Optional[str],
    registry: ConversionRegistry,
    table_name: str = "",
) -> Any:
    try:
        if descriptor.is_textual:
            value = raw or ""
            if descriptor.max_length > 0 and len(value) > descriptor.max_length:
                return value[: descriptor.max_length]
            return value

        if descriptor.nullable and is_null_token(raw):
            return None

        return registry.converter_for(descriptor.python_type)(raw)
    except (ValueError, TypeError, ArithmeticError) as e:
        raise LoadError(
            f"Cannot convert column '{descriptor.name}' value '{raw}' "
            f"to data type {descriptor.python_type.__name__}",
            ErrorKind.VALUE_CONVERSION,
            table_name,
            e,
        ) from e
