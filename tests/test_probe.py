import sys
from types import SimpleNamespace

import pytest

import sqlhost_probe
from sqlhost_probe import Credential, WaitTimeout


ADMIN = Credential("sa", "admin-secret", label="admin")
APP = Credential("app", "app-secret", label="application")


def _retry(predicate, clock, **kwargs):
    kwargs.setdefault("interval", 30)
    kwargs.setdefault("deadline", 4800)
    kwargs.setdefault("started", 0.0)
    kwargs.setdefault("label", "thing")
    return sqlhost_probe.retry_until(predicate, clock=clock, sleep=clock.sleep, **kwargs)


def test_retry_until_returns_first_truthy_result(clock):
    results = iter([None, "", "ready"])
    assert _retry(lambda: next(results), clock) == "ready"
    assert clock.slept == [30, 30]


def test_retry_until_treats_exceptions_as_not_ready(clock, capsys):
    attempts = []

    def flaky():
        attempts.append(1)
        if len(attempts) < 3:
            raise ConnectionError("login failed")
        return "ok"

    assert _retry(flaky, clock) == "ok"
    out = capsys.readouterr().out
    assert out.count("WARNING: thing not ready") == 2
    assert "login failed" in out


def test_retry_until_can_let_exceptions_through(clock):
    def boom():
        raise ValueError("bad request")

    with pytest.raises(ValueError):
        _retry(boom, clock, retry_on=())
    assert clock.slept == []


def test_retry_until_never_runs_past_deadline(clock):
    with pytest.raises(WaitTimeout):
        _retry(lambda: None, clock, interval=30, deadline=100)
    assert clock.now == 100
    assert clock.slept == [30, 30, 30, 10]


def test_retry_until_warns_once(clock, capsys):
    with pytest.raises(WaitTimeout):
        _retry(lambda: None, clock, interval=10, deadline=100, warn_after=35)
    assert capsys.readouterr().out.count("WARNING: Still waiting for thing") == 1


def test_retry_until_shares_the_callers_clock(clock):
    clock.now = 4790.0
    calls = []

    def never():
        calls.append(clock.now)
        return None

    with pytest.raises(WaitTimeout):
        _retry(never, clock, interval=30, deadline=4800, started=0.0)
    assert calls == [4790.0, 4800.0]


def test_admin_probe_failing_past_timeout_is_fatal(monkeypatch, clock):
    def refuse(address, credential, driver):
        raise ConnectionError("Login timeout expired")

    monkeypatch.setattr(sqlhost_probe, "probe", refuse)

    with pytest.raises(WaitTimeout):
        sqlhost_probe.wait_for_database(
            "10.0.0.5", ADMIN, APP, "ODBC Driver 18 for SQL Server",
            timeout=4800, started=0.0, clock=clock, sleep=clock.sleep,
        )
    assert clock.now <= 4800


def test_wait_for_database_checks_admin_then_application(monkeypatch, clock, capsys):
    calls = []

    def fake_probe(address, credential, driver):
        calls.append(credential.label)
        if credential.label == "admin" and calls.count("admin") < 3:
            raise ConnectionError("Login failed for user 'sa'")
        return "Microsoft SQL Server 2019 (RTM) - 15.0.2000.5\n\tCopyright"

    monkeypatch.setattr(sqlhost_probe, "probe", fake_probe)

    version = sqlhost_probe.wait_for_database(
        "10.0.0.5", ADMIN, APP, "ODBC Driver 18 for SQL Server",
        timeout=4800, started=0.0, clock=clock, sleep=clock.sleep,
    )

    assert version.startswith("Microsoft SQL Server 2019")
    assert calls == ["admin", "admin", "admin", "application"]
    assert clock.slept == [30, 30]
    assert "application login OK" in capsys.readouterr().out


def test_application_loop_uses_remaining_budget(monkeypatch, clock):
    def fake_probe(address, credential, driver):
        if credential.label == "admin":
            clock.now = 4790.0
            return "Microsoft SQL Server"
        raise ConnectionError("Login failed for user 'app'")

    monkeypatch.setattr(sqlhost_probe, "probe", fake_probe)

    with pytest.raises(WaitTimeout) as excinfo:
        sqlhost_probe.wait_for_database(
            "10.0.0.5", ADMIN, APP, "ODBC Driver 18 for SQL Server",
            timeout=4800, started=0.0, clock=clock, sleep=clock.sleep,
        )
    assert "application login" in str(excinfo.value)
    assert clock.now == 4800


def test_credential_repr_hides_password():
    assert "admin-secret" not in repr(ADMIN)


def test_build_conn_str_quotes_values():
    cred = Credential("app", "pa;ss}word", label="application")
    conn_str = sqlhost_probe.build_conn_str("10.0.0.5", cred, "ODBC Driver 18 for SQL Server")

    assert "DRIVER={ODBC Driver 18 for SQL Server};" in conn_str
    assert "SERVER=10.0.0.5,1433;" in conn_str
    assert "UID={app};" in conn_str
    assert "PWD={pa;ss}}word};" in conn_str
    assert "TrustServerCertificate=yes;" in conn_str


def test_probe_runs_version_query_and_closes(monkeypatch):
    executed = []
    closed = []

    class FakeCursor:
        def execute(self, sql):
            executed.append(sql)
            return self

        def fetchone(self):
            return ("Microsoft SQL Server 2019",)

    class FakeConnection:
        def cursor(self):
            return FakeCursor()

        def close(self):
            closed.append(True)

    connects = []

    def connect(conn_str, timeout):
        connects.append((conn_str, timeout))
        return FakeConnection()

    monkeypatch.setitem(sys.modules, "pyodbc", SimpleNamespace(connect=connect))

    assert sqlhost_probe.probe("10.0.0.5", ADMIN, "ODBC Driver 18 for SQL Server") == "Microsoft SQL Server 2019"
    assert executed == ["SELECT @@VERSION"]
    assert closed == [True]
    assert connects[0][1] == sqlhost_probe.LOGIN_TIMEOUT


def test_probe_closes_connection_on_query_error(monkeypatch):
    closed = []

    class FakeConnection:
        def cursor(self):
            raise RuntimeError("Login failed")

        def close(self):
            closed.append(True)

    monkeypatch.setitem(sys.modules, "pyodbc", SimpleNamespace(connect=lambda conn_str, timeout: FakeConnection()))

    with pytest.raises(RuntimeError):
        sqlhost_probe.probe("10.0.0.5", ADMIN, "ODBC Driver 18 for SQL Server")
    assert closed == [True]


def _fake_pyodbc(monkeypatch, drivers):
    monkeypatch.setitem(sys.modules, "pyodbc", SimpleNamespace(drivers=lambda: list(drivers)))


def test_ensure_odbc_driver_picks_newest(monkeypatch):
    _fake_pyodbc(monkeypatch, ["SQLite3", "ODBC Driver 17 for SQL Server", "ODBC Driver 18 for SQL Server"])
    assert sqlhost_probe.ensure_odbc_driver() == "ODBC Driver 18 for SQL Server"


def test_ensure_odbc_driver_honours_preference(monkeypatch):
    _fake_pyodbc(monkeypatch, ["ODBC Driver 17 for SQL Server", "ODBC Driver 18 for SQL Server"])
    assert sqlhost_probe.ensure_odbc_driver("ODBC Driver 17 for SQL Server") == "ODBC Driver 17 for SQL Server"


def test_ensure_odbc_driver_missing_preference_is_fatal(monkeypatch):
    _fake_pyodbc(monkeypatch, ["ODBC Driver 18 for SQL Server"])
    with pytest.raises(SystemExit):
        sqlhost_probe.ensure_odbc_driver("FreeTDS")


def test_ensure_odbc_driver_without_sql_server_driver_is_fatal(monkeypatch):
    _fake_pyodbc(monkeypatch, ["SQLite3", "PostgreSQL Unicode"])
    with pytest.raises(SystemExit) as excinfo:
        sqlhost_probe.ensure_odbc_driver()
    assert "ODBC Driver NN for SQL Server" in str(excinfo.value)


def test_ensure_odbc_driver_without_pyodbc_is_fatal(monkeypatch):
    monkeypatch.setitem(sys.modules, "pyodbc", None)
    with pytest.raises(SystemExit) as excinfo:
        sqlhost_probe.ensure_odbc_driver()
    assert "pip install pyodbc" in str(excinfo.value)
