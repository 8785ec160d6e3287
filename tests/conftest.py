"""
Shared test fixtures: a recording command runner and deployment contexts.
"""

import subprocess
import textwrap
from dataclasses import replace
from pathlib import Path
from typing import List, NamedTuple

import pytest

from zabbix_deploy import database
from zabbix_deploy.errors import CommandError
from zabbix_deploy.settings import DeployContext, PlatformInfo, Settings
from zabbix_deploy.shell import format_command


class Call(NamedTuple):
    command: list
    input: object
    env: object


class FakeRunner:
    """Records commands instead of running them. Responses match on a command prefix."""

    def __init__(self):
        self.calls: List[Call] = []
        self.responses = []

    def on(self, *prefix, returncode=0, stdout='', stderr='', effect=None):
        """Answer commands starting with ``prefix``; ``effect`` is called with the command first."""
        self.responses.insert(0, (tuple(prefix), returncode, stdout, stderr, effect))
        return self

    def __call__(self, command, check=True, log_output=False, input=None, env=None):
        self.calls.append(Call(list(command), input, env))
        returncode, stdout, stderr = 0, '', ''
        for prefix, rc, out, err, effect in self.responses:
            if tuple(command[:len(prefix)]) == prefix:
                if effect:
                    effect(command)
                returncode, stdout, stderr = rc, out, err
                break
        if check and returncode != 0:
            raise CommandError(format_command(command), returncode, stderr)
        return subprocess.CompletedProcess(command, returncode, stdout, stderr)

    @property
    def commands(self):
        return [call.command for call in self.calls]

    def ran(self, *prefix) -> bool:
        return any(tuple(command[:len(prefix)]) == prefix for command in self.commands)

    def index(self, *prefix) -> int:
        for i, command in enumerate(self.commands):
            if tuple(command[:len(prefix)]) == prefix:
                return i
        raise AssertionError(f"{prefix} was not run")


@pytest.fixture
def runner() -> FakeRunner:
    return FakeRunner()


class FakeCursor:
    def __init__(self, conn):
        self.conn = conn

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def execute(self, query, params=None):
        self.conn.queries.append((query, params))
        for fragment, error in self.conn.failures.items():
            if fragment in query:
                raise error


class FakeConnection:
    def __init__(self):
        self.queries = []
        self.failures = {}
        self.connect_calls = []
        self.open = True

    def cursor(self):
        return FakeCursor(self)

    def close(self):
        self.open = False


@pytest.fixture
def mysql_conn(monkeypatch) -> FakeConnection:
    """Patch pymysql.connect; every connection attempt gets this connection."""
    conn = FakeConnection()

    def fake_connect(**kwargs):
        conn.connect_calls.append(kwargs)
        conn.open = True
        return conn

    monkeypatch.setattr(database, 'MYSQL_SOCKETS', ())
    monkeypatch.setattr(database.pymysql, 'connect', fake_connect)
    return conn


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    return Settings(
        backup_dir=str(tmp_path / 'backups'),
        download_dir=str(tmp_path / 'downloads'),
    )


@pytest.fixture
def ubuntu() -> PlatformInfo:
    return PlatformInfo('ubuntu', '22.04', 'amd64', 'Ubuntu 22.04.4 LTS')


@pytest.fixture
def rocky() -> PlatformInfo:
    return PlatformInfo('rocky', '9', 'amd64', 'Rocky Linux 9.3 (Blue Onyx)')


@pytest.fixture
def make_context(settings, ubuntu):
    """Build a DeployContext with test defaults; keyword arguments override fields."""

    def factory(**fields) -> DeployContext:
        ctx = DeployContext(
            component='agent',
            action='install',
            version='7.0',
            platform=ubuntu,
            hostname='web01.example.com',
            ip_address='10.0.0.5',
            settings=settings,
        )
        return replace(ctx, **fields)

    return factory


AGENT_CONF = textwrap.dedent("""\
    # This is a configuration file for Zabbix agent 2 (Unix)

    ### Option: PidFile
    PidFile=/run/zabbix/zabbix_agent2.pid

    ### Option: Server
    # Server=

    Server=127.0.0.1

    ### Option: ServerActive
    ServerActive=127.0.0.1

    ### Option: Hostname
    # Hostname=

    Hostname=Zabbix server

    ### Option: HostMetadata
    # HostMetadata=

    ### Option: ListenIP
    # ListenIP=0.0.0.0

    Include=/etc/zabbix/zabbix_agent2.d/*.conf
""")


@pytest.fixture
def agent_conf_text() -> str:
    return AGENT_CONF


@pytest.fixture
def agent_conf(tmp_path: Path) -> Path:
    path = tmp_path / 'zabbix_agent2.conf'
    path.write_text(AGENT_CONF)
    return path
