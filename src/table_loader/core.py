import os
import logging
from dataclasses import dataclass, field
from enum import IntEnum
from pathlib import Path
from typing import Dict, Iterator, List, Optional, Tuple

import toml
import pandas as pd
from sqlalchemy import create_engine
from sqlalchemy.engine import Connection, make_url
from sqlalchemy.exc import ArgumentError, NoSuchModuleError, SQLAlchemyError

from table_loader.conversion import ConversionRegistry, build_registry
from table_loader.dialects import StandardDialect, dialect_for
from table_loader.errors import ConfigurationError, ErrorKind, LoadError
from table_loader.loader import LoadStatistics, load_file
from table_loader.metadata import fold

log = logging.getLogger("table_loader.core")

UPDATEABLE_DIR = "Updateable"
DEFAULT_FILE_PATTERN = "*.csv"


class ExitCode(IntEnum):
    SUCCESS = 0
    MISSING_CONFIGURATION = -1
    UNRECOGNIZED_COLUMNS = -2
    LOAD_FAILURE = -3
    TABLE_NOT_FOUND = -4


_SEVERITY = {
    ExitCode.SUCCESS: 0,
    ExitCode.UNRECOGNIZED_COLUMNS: 1,
    ExitCode.LOAD_FAILURE: 2,
    ExitCode.TABLE_NOT_FOUND: 3,
    ExitCode.MISSING_CONFIGURATION: 4,
}


def worst(*codes: ExitCode) -> ExitCode:
    return max(codes, key=_SEVERITY.__getitem__, default=ExitCode.SUCCESS)


@dataclass
class LoaderSettings:
    database_url: str
    base_dir: Path
    updateable_dir: str = UPDATEABLE_DIR
    file_pattern: str = DEFAULT_FILE_PATTERN
    delimiter: str = ","
    encoding: str = "utf8"
    progress: bool = True
    log_level: Optional[str] = None
    summary_path: Optional[Path] = None
    only_tables: List[str] = field(default_factory=list)


@dataclass
class FileResult:
    directory: str
    file: str
    table: str
    safe_load: bool
    statistics: LoadStatistics = field(default_factory=LoadStatistics)
    exit_code: ExitCode = ExitCode.SUCCESS
    error: str = ""


def configure_logging(level_str: str) -> None:
    if not level_str:
        return
    level_str = level_str.upper()
    level = getattr(logging, level_str, None)
    if not isinstance(level, int):
        log.warning(f"Invalid log level '{level_str}'. Defaulting to INFO.")
        level = logging.INFO
    logging.getLogger().setLevel(level)
    logging.getLogger("table_loader").setLevel(level)
    log.info(f"Logging level set to {logging.getLevelName(level)}")


def load_settings(
    config_path: Optional[str] = None,
    connection: Optional[str] = None,
    base_dir: Optional[str] = None,
    only_tables: Optional[List[str]] = None,
) -> LoaderSettings:
    config: Dict = {}
    if config_path:
        cfg_path = Path(config_path)
        if not cfg_path.exists():
            raise ConfigurationError(f"Config not found: {config_path}")
        log.info(f"Reading config: {config_path}")
        try:
            config = toml.load(cfg_path)
        except toml.TomlDecodeError as e:
            raise ConfigurationError(f"Config '{config_path}' is not valid TOML: {e}") from e

    database = config.get("database", {}) or {}
    loader = config.get("loader", {}) or {}
    options = config.get("options", {}) or {}

    db_url = connection or database.get("url")
    if not db_url:
        raise ConfigurationError("Argument 'connection' is missing but is required.")
    try:
        make_url(db_url)
    except ArgumentError as e:
        raise ConfigurationError(f"Argument 'connection' ({db_url}) is invalid. Details: {e}") from e

    base = base_dir or loader.get("base_dir")
    if not base:
        raise ConfigurationError("Argument 'baseDir' is missing but is required.")
    base_path = Path(base)
    if not base_path.is_dir():
        raise ConfigurationError(
            f"Argument 'baseDir' ({base}) does not reference an actual directory."
        )

    summary_path = loader.get("summary_path")
    return LoaderSettings(
        database_url=db_url,
        base_dir=base_path,
        updateable_dir=loader.get("updateable_dir", UPDATEABLE_DIR),
        file_pattern=loader.get("file_pattern", DEFAULT_FILE_PATTERN),
        delimiter=loader.get("delimiter", ","),
        encoding=loader.get("encoding", "utf8"),
        progress=bool(options.get("progress", True)),
        log_level=options.get("loglevel"),
        summary_path=Path(summary_path) if summary_path else None,
        only_tables=list(only_tables or []),
    )


def iter_load_files(settings: LoaderSettings) -> Iterator[Tuple[Path, Path, bool]]:
    """Yield (directory, file, safe_load) in directory/file name order."""
    wanted = {fold(t) for t in settings.only_tables}
    for directory in sorted(p for p in settings.base_dir.iterdir() if p.is_dir()):
        safe_load = fold(directory.name) == fold(settings.updateable_dir)
        for path in sorted(directory.glob(settings.file_pattern)):
            if not path.is_file():
                continue
            if wanted and fold(path.stem) not in wanted:
                log.debug(f"Skipping {directory.name}/{path.name}: not in requested tables.")
                continue
            yield directory, path, safe_load


def load_one(
    conn: Connection,
    directory: Path,
    path: Path,
    safe_load: bool,
    registry: ConversionRegistry,
    dialect: StandardDialect,
    settings: LoaderSettings,
) -> FileResult:
    result = FileResult(directory.name, path.name, path.stem, safe_load)
    try:
        result.statistics = load_file(
            conn,
            path,
            safe_load,
            registry,
            dialect,
            delimiter=settings.delimiter,
            encoding=settings.encoding,
            progress=settings.progress,
        )
        if result.statistics.records_errored:
            result.exit_code = ExitCode.LOAD_FAILURE
    except LoadError as e:
        result.error = e.args[0]
        if e.kind is ErrorKind.TABLE_NOT_FOUND:
            log.error(f"Table '{e.table_name}' does not exist in the database.")
            result.exit_code = ExitCode.TABLE_NOT_FOUND
        elif e.kind is ErrorKind.UNRECOGNIZED_COLUMNS:
            log.error(f"File '{path.name}': {e.args[0]}")
            result.exit_code = ExitCode.UNRECOGNIZED_COLUMNS
        else:
            log.error(f"Error loading table '{e.table_name}'. Details: {e}")
            result.exit_code = ExitCode.LOAD_FAILURE
    except Exception as e:
        log.exception(f"An error occurred while loading file '{directory.name}/{path.name}'. Details: {e}")
        result.error = str(e)
        result.exit_code = ExitCode.LOAD_FAILURE
    return result


def summary_frame(results: List[FileResult]) -> pd.DataFrame:
    return pd.DataFrame(
        [
            {
                "directory": r.directory,
                "file": r.file,
                "table": r.table,
                "mode": "update" if r.safe_load else "insert",
                "inserted": r.statistics.records_created,
                "updated": r.statistics.records_updated,
                "errored": r.statistics.records_errored,
                "total": r.statistics.total_records,
                "exit_code": int(r.exit_code),
                "error": r.error,
            }
            for r in results
        ],
        columns=[
            "directory", "file", "table", "mode", "inserted",
            "updated", "errored", "total", "exit_code", "error",
        ],
    )


def report(results: List[FileResult], summary_path: Optional[Path] = None) -> pd.DataFrame:
    df = summary_frame(results)
    if df.empty:
        log.warning("No data files found; nothing was loaded.")
        return df
    log.info("Load summary:\n" + df.drop(columns=["error"]).to_string(index=False))
    if summary_path:
        summary_path.parent.mkdir(parents=True, exist_ok=True)
        df.to_csv(summary_path, index=False)
        log.info(f"Wrote load summary to {summary_path}")
    return df


def run_pipeline(
    config_path: Optional[str] = None,
    connection: Optional[str] = None,
    base_dir: Optional[str] = None,
    only_tables: Optional[List[str]] = None,
) -> int:
    try:
        settings = load_settings(config_path, connection, base_dir, only_tables)
    except ConfigurationError as e:
        log.error(str(e))
        return int(ExitCode.MISSING_CONFIGURATION)

    cli_log_level = os.getenv("LOG_LEVEL")
    if not cli_log_level and settings.log_level:
        configure_logging(settings.log_level)
    elif cli_log_level:
        log.debug(f"CLI LOG_LEVEL in effect: {cli_log_level}")

    log.info(f"Data files directory: {settings.base_dir.resolve()}")
    try:
        engine = create_engine(settings.database_url, pool_pre_ping=True)
    except (ImportError, NoSuchModuleError) as e:
        log.error(f"Argument 'connection' names a database driver that is not available. Details: {e}")
        return int(ExitCode.MISSING_CONFIGURATION)
    log.info(f"Connection: {engine.url!r}")

    registry = build_registry()
    results: List[FileResult] = []
    try:
        with engine.connect() as conn:
            # every record commits on its own
            conn = conn.execution_options(isolation_level="AUTOCOMMIT")
            dialect = dialect_for(conn)
            for directory, path, safe_load in iter_load_files(settings):
                results.append(
                    load_one(conn, directory, path, safe_load, registry, dialect, settings)
                )
    except SQLAlchemyError as e:
        log.error(f"Database connection failed: {e}")
        results.append(
            FileResult("", "", "", False, exit_code=ExitCode.LOAD_FAILURE, error=str(e))
        )
    finally:
        engine.dispose()

    report([r for r in results if r.file], settings.summary_path)
    exit_code = worst(*(r.exit_code for r in results))
    log.info("Data Load Complete")
    return int(exit_code)
