from unittest.mock import patch

from krysselista import cli


def test_cli_passes_bind_options_to_uvicorn():
    with patch("krysselista.cli.uvicorn.run") as run:
        cli.main(["--host", "0.0.0.0", "--port", "4000", "--reload"])
    args, kwargs = run.call_args
    assert args == ("krysselista.main:app",)
    assert kwargs["host"] == "0.0.0.0"
    assert kwargs["port"] == 4000
    assert kwargs["reload"] is True


def test_cli_exports_db_and_departments(monkeypatch, tmp_path):
    db_path = str(tmp_path / "krysselista.db")
    monkeypatch.setenv("KRYSSELISTA_DB", ":memory:")
    monkeypatch.setenv("KRYSSELISTA_DEPARTMENTS", "Småbarna")
    with patch("krysselista.cli.uvicorn.run"):
        cli.main(["--db", db_path, "--departments", "Rød,Blå"])
    assert cli.os.environ["KRYSSELISTA_DB"] == db_path
    assert cli.os.environ["KRYSSELISTA_DEPARTMENTS"] == "Rød,Blå"


def test_cli_defaults_leave_environment_alone(monkeypatch):
    monkeypatch.setenv("KRYSSELISTA_DB", ":memory:")
    with patch("krysselista.cli.uvicorn.run") as run:
        cli.main([])
    assert run.call_args.kwargs["reload"] is False
    assert cli.os.environ["KRYSSELISTA_DB"] == ":memory:"
