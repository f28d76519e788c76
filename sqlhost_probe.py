#!/usr/bin/env python3
"""
SQL Server readiness checks.

A fresh Windows/SQL Server host takes a long time between "instance running"
and "logins work": first boot, sysprep, then the boot-data script creating
the application login. This module polls the engine with a trivial query
until both the admin and the application credentials authenticate.
"""

import re
import time
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path

SQL_PORT = 1433
LOGIN_TIMEOUT = 15
PROBE_QUERY = "SELECT @@VERSION"
LOG_TO_FILE = None

DB_POLL_INTERVAL = 30
DB_WARN_AFTER = 2400

_DRIVER_RE = re.compile(r"ODBC Driver (\d+) for SQL Server")


def ts():
    return datetime.now().strftime("[%Y-%m-%dT%H:%M:%S%z]")


def log(msg):
    line = f"{ts()} {msg}"
    print(line, flush=True)
    if LOG_TO_FILE:
        try:
            Path(LOG_TO_FILE).parent.mkdir(parents=True, exist_ok=True)
            with Path(LOG_TO_FILE).open("a", encoding="utf-8") as fh:
                fh.write(line + "\n")
        except OSError:
            pass


class WaitTimeout(RuntimeError):
    """A readiness poll ran past its deadline."""


@dataclass
class Credential:
    username: str
    password: str = field(repr=False)
    label: str = "login"


def admin_credential(settings) -> Credential:
    return Credential(settings.admin_user, settings.admin_password, label="admin")


def app_credential(settings) -> Credential:
    return Credential(settings.app_user, settings.app_password, label="application")


# ---------------------------------------------------------------------------
# Toolkit
# ---------------------------------------------------------------------------

def ensure_odbc_driver(preferred=None) -> str:
    """Return the ODBC driver to use, or exit if pyodbc or a SQL Server driver is missing."""
    try:
        import pyodbc
    except ImportError as exc:
        raise SystemExit(
            f"ERROR: pyodbc is not usable ({exc}). Install unixODBC and run: pip install pyodbc"
        )
    installed = pyodbc.drivers()
    if preferred:
        if preferred in installed:
            return preferred
        raise SystemExit(f"ERROR: ODBC driver '{preferred}' not installed (found: {', '.join(installed) or 'none'}).")
    candidates = [d for d in installed if _DRIVER_RE.fullmatch(d)]
    if not candidates:
        raise SystemExit(
            "ERROR: No 'ODBC Driver NN for SQL Server' installed. "
            "See https://learn.microsoft.com/sql/connect/odbc/linux-mac/installing-the-microsoft-odbc-driver-for-sql-server"
        )
    driver = max(candidates, key=lambda d: int(_DRIVER_RE.fullmatch(d).group(1)))
    log(f"Using ODBC driver: {driver}")
    return driver


def _odbc_quote(value: str) -> str:
    return "{" + value.replace("}", "}}") + "}"


def build_conn_str(address: str, credential: Credential, driver: str, port: int = SQL_PORT) -> str:
    # New hosts present a self-signed certificate
    return (
        f"DRIVER={_odbc_quote(driver)};"
        f"SERVER={address},{port};"
        "DATABASE=master;"
        f"UID={_odbc_quote(credential.username)};PWD={_odbc_quote(credential.password)};"
        "Encrypt=yes;TrustServerCertificate=yes;"
    )


def probe(address: str, credential: Credential, driver: str, port: int = SQL_PORT) -> str:
    """Run the version query as ``credential``; errors propagate."""
    import pyodbc

    conn = pyodbc.connect(build_conn_str(address, credential, driver, port), timeout=LOGIN_TIMEOUT)
    try:
        row = conn.cursor().execute(PROBE_QUERY).fetchone()
    finally:
        conn.close()
    return row[0]


# ---------------------------------------------------------------------------
# Polling
# ---------------------------------------------------------------------------

def retry_until(predicate, *, interval, deadline, started, label, warn_after=None,
                retry_on=(Exception,), clock=time.monotonic, sleep=time.sleep):
    """Call ``predicate`` until it returns something truthy.

    Elapsed time is measured from ``started`` rather than from the first call,
    so several loops can share one budget. Exceptions listed in ``retry_on``
    count as "not ready yet". The last sleep is shortened so the loop never
    runs past ``deadline``; once the deadline is reached ``WaitTimeout`` is
    raised.
    """
    warned = False
    attempt = 0
    while True:
        elapsed = clock() - started
        if elapsed > deadline:
            raise WaitTimeout(f"Timed out after {int(elapsed)}s waiting for {label} (limit {deadline}s)")
        attempt += 1
        try:
            result = predicate()
        except retry_on as exc:
            log(f"WARNING: {label} not ready (attempt {attempt}): {exc}")
            result = None
        if result:
            return result
        elapsed = clock() - started
        if elapsed >= deadline:
            raise WaitTimeout(f"Timed out after {int(elapsed)}s waiting for {label} (limit {deadline}s)")
        if warn_after is not None and elapsed > warn_after and not warned:
            log(f"WARNING: Still waiting for {label} after {int(elapsed)}s")
            warned = True
        sleep(min(interval, deadline - elapsed))


def wait_for_credential(address, credential: Credential, driver, *, timeout, started,
                        clock=time.monotonic, sleep=time.sleep) -> str:
    log(f"Waiting for SQL Server on {address} to accept the {credential.label} login ({credential.username})")
    version = retry_until(
        lambda: probe(address, credential, driver),
        interval=DB_POLL_INTERVAL,
        deadline=timeout,
        started=started,
        label=f"{credential.label} login on {address}",
        warn_after=DB_WARN_AFTER,
        clock=clock,
        sleep=sleep,
    )
    log(f"  {credential.label} login OK: {version.splitlines()[0]}")
    return version


def wait_for_database(address, admin: Credential, app: Credential, driver, *, timeout, started,
                      clock=time.monotonic, sleep=time.sleep):
    """Admin login first, then the application login, on the caller's clock."""
    wait_for_credential(address, admin, driver, timeout=timeout, started=started, clock=clock, sleep=sleep)
    return wait_for_credential(address, app, driver, timeout=timeout, started=started, clock=clock, sleep=sleep)
