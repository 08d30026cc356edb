"""Shared test fixtures: template DB for per-test isolation, fake agent wiring."""

import asyncio
import shutil
import sqlite3
import sys
import tempfile
import time
from pathlib import Path

import pytest

from clork.db import add_project, get_connection, get_project, update_project
from clork.supervisor import ProcessSupervisor
from clork.usage import LocalFileReader, UsageState
from clork.usage_poller import UsagePoller

FAKE_AGENT = Path(__file__).with_name("_fake_agent.py")


@pytest.fixture(scope="session")
def _db_template_path() -> Path:
    """Create a single template DB with full schema + a default project.

    Copying this file is much cheaper than running all migrations from
    scratch in every test function.
    """
    fd, path_str = tempfile.mkstemp(suffix=".db")
    path = Path(path_str)
    try:
        conn = get_connection(path)
        add_project(conn, "testproj", "/tmp/testproj")
        conn.close()
        yield path
    finally:
        path.unlink(missing_ok=True)


@pytest.fixture()
def db_conn(tmp_path: Path, _db_template_path: Path) -> sqlite3.Connection:
    """Per-test DB connection with schema + testproj pre-loaded."""
    db_path = tmp_path / "test.db"
    shutil.copy2(_db_template_path, db_path)
    conn = get_connection(db_path)
    try:
        yield conn
    finally:
        conn.close()


@pytest.fixture()
def db_conn_path(tmp_path: Path, _db_template_path: Path) -> tuple[sqlite3.Connection, Path]:
    """Per-test DB connection + path (for tests that re-open the DB)."""
    db_path = tmp_path / "test.db"
    shutil.copy2(_db_template_path, db_path)
    conn = get_connection(db_path)
    try:
        yield conn, db_path
    finally:
        conn.close()


@pytest.fixture()
def project(db_conn: sqlite3.Connection, tmp_path: Path) -> dict:
    """testproj, pointed at a real working directory."""
    workdir = tmp_path / "work"
    workdir.mkdir()
    proj = get_project(db_conn, "testproj")
    assert proj is not None
    updated = update_project(db_conn, proj["id"], root_dir=str(workdir))
    assert updated is not None
    return dict(updated)


@pytest.fixture()
def fake_agent_command() -> str:
    return f'"{sys.executable}" "{FAKE_AGENT}"'


@pytest.fixture()
def supervisor(tmp_path: Path, fake_agent_command: str) -> ProcessSupervisor:
    return ProcessSupervisor(
        agent_command=fake_agent_command,
        scratch_dir=tmp_path / "scratch",
        poll_interval=0.02,
        silence_warning=0,
    )


@pytest.fixture()
def poller(tmp_path: Path, fake_agent_command: str) -> UsagePoller:
    state = UsageState()
    credentials = tmp_path / "agent-home" / ".credentials.json"
    reader = LocalFileReader(
        state,
        credentials_path=credentials,
        stats_cache_path=tmp_path / "agent-home" / "stats-cache.json",
        agent_command=fake_agent_command,
    )
    return UsagePoller(state=state, reader=reader, credentials_path=credentials, initial_delay=0)


@pytest.fixture()
def wait_until():
    """Poll an (optionally async) condition until it holds or the timeout expires."""

    async def _wait(predicate, timeout: float = 10.0, interval: float = 0.02):
        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            result = predicate()
            if asyncio.iscoroutine(result):
                result = await result
            if result:
                return result
            await asyncio.sleep(interval)
        raise AssertionError(f"condition not met within {timeout}s")

    return _wait
