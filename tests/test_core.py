import pandas as pd
import pytest

from table_loader.cli import main
from table_loader.core import ExitCode, iter_load_files, load_settings, run_pipeline, worst
from table_loader.errors import ConfigurationError


@pytest.fixture(autouse=True)
def no_cli_log_level(monkeypatch):
    monkeypatch.delenv("LOG_LEVEL", raising=False)


@pytest.fixture
def base_dir(tmp_path):
    path = tmp_path / "data"
    path.mkdir()
    return path


def write(base_dir, relative, content):
    path = base_dir / relative
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content, encoding="utf-8")
    return path


def test_worst_outcome_wins():
    assert worst() is ExitCode.SUCCESS
    assert worst(ExitCode.SUCCESS, ExitCode.UNRECOGNIZED_COLUMNS) is ExitCode.UNRECOGNIZED_COLUMNS
    assert worst(ExitCode.TABLE_NOT_FOUND, ExitCode.LOAD_FAILURE) is ExitCode.TABLE_NOT_FOUND
    assert worst(ExitCode.LOAD_FAILURE, ExitCode.UNRECOGNIZED_COLUMNS) is ExitCode.LOAD_FAILURE


def test_iter_load_files_marks_updateable_directories(base_dir, db_url):
    write(base_dir, "Inserts/Employee.csv", "Id\n")
    write(base_dir, "Inserts/readme.txt", "ignored")
    write(base_dir, "UPDATEABLE/Shift.csv", "EmployeeId\n")
    settings = load_settings(connection=db_url, base_dir=str(base_dir))

    found = [(d.name, p.name, safe) for d, p, safe in iter_load_files(settings)]
    assert found == [("Inserts", "Employee.csv", False), ("UPDATEABLE", "Shift.csv", True)]


def test_iter_load_files_filters_tables(base_dir, db_url):
    write(base_dir, "Inserts/Employee.csv", "Id\n")
    write(base_dir, "Inserts/Shift.csv", "EmployeeId\n")
    settings = load_settings(connection=db_url, base_dir=str(base_dir), only_tables=["employee"])

    assert [p.name for _, p, _ in iter_load_files(settings)] == ["Employee.csv"]


def test_successful_run(base_dir, db_url, fetch):
    write(base_dir, "Inserts/Employee.csv", "Id,Name,HireDate\n1,Ann,2024-01-01\n2,Bob,2024-01-02\n")
    write(base_dir, "Updateable/Employee.csv", "Id,Name\n2,Rob\n3,Cy\n")

    assert run_pipeline(connection=db_url, base_dir=str(base_dir)) == 0
    assert fetch("SELECT Id, Name FROM Employee ORDER BY Id") == [(1, "Ann"), (2, "Rob"), (3, "Cy")]


@pytest.mark.parametrize(
    "connection, base, expected_message",
    [
        (None, "data", "'connection' is missing"),
        ("sqlite://", None, "'baseDir' is missing"),
        ("sqlite://", "does-not-exist", "does not reference an actual directory"),
        ("not a url", "data", "is invalid"),
    ],
)
def test_missing_configuration(tmp_path, base_dir, connection, base, expected_message):
    base = str(tmp_path / base) if base else None
    with pytest.raises(ConfigurationError, match=expected_message):
        load_settings(connection=connection, base_dir=base)
    assert run_pipeline(connection=connection, base_dir=base) == ExitCode.MISSING_CONFIGURATION


def test_missing_config_file(tmp_path):
    assert run_pipeline(str(tmp_path / "missing.toml")) == -1


def test_unrecognized_columns_exit_code(base_dir, db_url, fetch):
    write(base_dir, "Inserts/Employee.csv", "Id,Salary\n1,100\n")
    assert run_pipeline(connection=db_url, base_dir=str(base_dir)) == -2
    assert fetch("SELECT COUNT(*) FROM Employee") == [(0,)]


def test_record_failure_exit_code(base_dir, db_url, fetch):
    write(base_dir, "Inserts/Shift.csv", "EmployeeId,Day,Hours\n1,2024-01-01,abc\n1,2024-01-02,8\n")
    assert run_pipeline(connection=db_url, base_dir=str(base_dir)) == -3
    assert fetch("SELECT COUNT(*) FROM Shift") == [(1,)]


def test_missing_table_does_not_stop_the_run(base_dir, db_url, fetch):
    write(base_dir, "Inserts/Employee.csv", "Id,Salary\n1,100\n")
    write(base_dir, "Inserts/Payroll.csv", "Id\n1\n")
    write(base_dir, "Inserts/Shift.csv", "EmployeeId,Day,Hours\n1,2024-01-01,8\n")

    assert run_pipeline(connection=db_url, base_dir=str(base_dir)) == -4
    assert fetch("SELECT COUNT(*) FROM Shift") == [(1,)]


def test_config_file_and_summary(tmp_path, base_dir, db_url):
    write(base_dir, "Updateable/AuditLog.csv", "Message\nstarted\nfinished\n")
    summary = tmp_path / "out" / "summary.csv"
    config = tmp_path / "config.toml"
    config.write_text(
        "[database]\n"
        f'url = "{db_url}"\n'
        "[loader]\n"
        f'base_dir = "{base_dir.as_posix()}"\n'
        f'summary_path = "{summary.as_posix()}"\n'
        "[options]\n"
        'loglevel = "DEBUG"\n'
        "progress = false\n",
        encoding="utf-8",
    )

    assert run_pipeline(str(config)) == 0

    df = pd.read_csv(summary)
    assert df.loc[0, "table"] == "AuditLog"
    assert df.loc[0, "mode"] == "update"
    assert (df.loc[0, "inserted"], df.loc[0, "updated"], df.loc[0, "total"]) == (2, 0, 2)


def test_cli_overrides(base_dir, db_url, fetch):
    write(base_dir, "Inserts/Employee.csv", "Id,Name\n1,Ann\n")
    write(base_dir, "Inserts/Shift.csv", "EmployeeId,Day,Hours\n1,2024-01-01,8\n")

    code = main(["--connection", db_url, "--base-dir", str(base_dir), "--tables", "Shift"])
    assert code == 0
    assert fetch("SELECT COUNT(*) FROM Employee") == [(0,)]
    assert fetch("SELECT COUNT(*) FROM Shift") == [(1,)]


def test_unknown_driver_is_a_configuration_error(base_dir):
    write(base_dir, "Inserts/Employee.csv", "Id\n1\n")
    assert run_pipeline(connection="sqlite+nosuchdriver://", base_dir=str(base_dir)) == -1


def test_missing_driver_module_is_a_configuration_error(monkeypatch, base_dir):
    def create_engine(*args, **kwargs):
        raise ModuleNotFoundError("No module named 'pyodbc'")

    monkeypatch.setattr("table_loader.core.create_engine", create_engine)
    assert run_pipeline(connection="mssql+pyodbc://host/db", base_dir=str(base_dir)) == -1
