import sys
import os
import argparse
import logging

from table_loader.core import run_pipeline

LOG_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Schema-driven CSV -> database loader (insert, or upsert from 'Updateable')"
    )
    parser.add_argument(
        "--config", type=str, default=None, help="Path to TOML config"
    )
    parser.add_argument(
        "--connection", type=str, help="SQLAlchemy database URL (overrides [database].url)"
    )
    parser.add_argument(
        "--base-dir", type=str, help="Directory of per-table subdirectories (overrides [loader].base_dir)"
    )
    parser.add_argument(
        "--tables", type=str, nargs="*", help="Optional list of table names to process"
    )
    parser.add_argument(
        "--log-level",
        type=str,
        help="Override log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)",
    )
    return parser


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)

    # CLI precedence: if provided, set env for core
    if args.log_level:
        os.environ["LOG_LEVEL"] = args.log_level.upper()
    level = getattr(logging, os.getenv("LOG_LEVEL", "INFO").upper(), logging.INFO)
    logging.basicConfig(level=level, format=LOG_FORMAT, datefmt="%Y-%m-%d %H:%M:%S")

    return run_pipeline(
        args.config,
        connection=args.connection,
        base_dir=args.base_dir,
        only_tables=args.tables,
    )


if __name__ == "__main__":
    sys.exit(main())
