"""
Tests for argument handling and the command line entry points.
"""

import logging
from pathlib import Path

import pytest

from zabbix_deploy import cli
from zabbix_deploy.errors import DeployError, ValidationError


@pytest.fixture(autouse=True)
def reset_logger():
    yield
    logger = logging.getLogger('zabbix_deploy')
    for handler in list(logger.handlers):
        handler.close()
    logger.handlers.clear()


def parse(component, *argv):
    return cli.build_parser(component).parse_args(list(argv))


class TestValidation:
    @pytest.mark.parametrize('component, argv, message', [
        ('agent', ['--version', '7.0'], '--action is required'),
        ('agent', ['--action', 'install', '--server-ip', '10.0.0.1'], '--version is required'),
        ('server', ['--action', 'install', '--version', '7.0', '--webserver', 'nginx', '--default'],
         '--db is required'),
        ('server', ['--action', 'install', '--version', '7.0', '--db', 'sqlite', '--webserver', 'nginx'],
         '--db is required'),
        ('server', ['--action', 'upgrade', '--version', '7.4', '--db', 'mysql'], '--webserver is required'),
        ('proxy', ['--action', 'install', '--version', '7.0', '--db', 'sqlite'], '--server-ip is required'),
        ('agent', ['--action', 'install', '--version', '7.0'], '--server-ip is required'),
        ('proxy', ['--action', 'install', '--version', '7.0', '--db', 'mysql', '--server-ip', '10.0.0.1'],
         '--default or --manual'),
        ('proxy', ['--action', 'install', '--version', '7.0', '--db', 'pgsql', '--server-ip', '10.0.0.1',
                   '--manual', '--yes'], '--manual cannot be combined with --yes'),
    ])
    def test_rejected(self, component, argv, message):
        with pytest.raises(ValidationError, match=message):
            cli.validate_args(parse(component, *argv), component)

    @pytest.mark.parametrize('component, argv', [
        ('agent', ['--action', 'install', '--version', '7.0', '--server-ip', '10.0.0.1']),
        ('agent', ['--action', 'uninstall']),
        ('agent', ['--action', 'upgrade', '--version', '7.4']),
        ('proxy', ['--action', 'install', '--version', '7.0', '--db', 'sqlite', '--server-ip', '10.0.0.1', '-y']),
        ('proxy', ['--action', 'upgrade', '--version', '7.4', '--db', 'mysql']),
        ('server', ['--action', 'install', '--version', '7.4', '--db', 'pgsql', '--webserver', 'apache',
                    '--default']),
        ('server', ['--action', 'uninstall', '--purge-db', '--yes']),
        ('server', ['--action', 'status', '--db', 'pgsql']),
        ('agent', ['--action', 'status']),
    ])
    def test_accepted(self, component, argv):
        cli.validate_args(parse(component, *argv), component)

    def test_unknown_version_is_a_usage_error(self, capsys):
        with pytest.raises(SystemExit) as exc:
            parse('agent', '--action', 'install', '--version', '5.0')
        assert exc.value.code == 1
        assert 'invalid choice' in capsys.readouterr().err

    def test_default_and_manual_are_exclusive(self):
        with pytest.raises(SystemExit):
            parse('server', '--action', 'install', '--default', '--manual')

    def test_generic_parser_requires_component(self):
        with pytest.raises(SystemExit):
            parse(None, '--action', 'install')
        assert parse(None, '--component', 'proxy', '--action', 'uninstall').component == 'proxy'


class TestPassword:
    def test_default(self):
        args = parse('server', '--db', 'mysql', '--default')
        assert cli.resolve_password(args, 'zabbix_password') == 'zabbix_password'

    def test_manual(self):
        answers = iter(['s3cret', 's3cret'])
        args = parse('server', '--db', 'pgsql', '--manual')
        assert cli.resolve_password(args, 'unused', prompt=lambda text: next(answers)) == 's3cret'

    def test_manual_mismatch(self):
        answers = iter(['s3cret', 'other'])
        args = parse('server', '--db', 'mysql', '--manual')
        with pytest.raises(ValidationError, match='do not match'):
            cli.resolve_password(args, 'unused', prompt=lambda text: next(answers))

    def test_manual_empty(self):
        args = parse('server', '--db', 'mysql', '--manual')
        with pytest.raises(ValidationError, match='cannot be empty'):
            cli.resolve_password(args, 'unused', prompt=lambda text: '')

    def test_sqlite_has_no_password(self):
        args = parse('proxy', '--db', 'sqlite', '--default')
        assert cli.resolve_password(args, 'zabbix_password') is None


class TestSetupLogging:
    def test_console_and_file(self, tmp_path: Path):
        log_file = tmp_path / 'deploy.log'
        logger = cli.setup_logging('console', str(log_file))
        logger.info('hello')
        for handler in logger.handlers:
            handler.flush()

        assert len(logger.handlers) == 2
        assert ' - INFO - hello' in log_file.read_text()

    def test_unwritable_log_file(self, tmp_path: Path, capsys):
        logger = cli.setup_logging('console', str(tmp_path / 'missing' / 'deploy.log'))
        assert len(logger.handlers) == 1
        assert 'Cannot write log file' in capsys.readouterr().out

    def test_verbose(self, tmp_path: Path):
        logger = cli.setup_logging('console', str(tmp_path / 'deploy.log'), verbose=True)
        assert logger.level == logging.DEBUG


class TestMain:
    @pytest.fixture
    def host(self, monkeypatch, tmp_path: Path, ubuntu):
        """A root shell on an Ubuntu host; the deployer is recorded, not run."""
        monkeypatch.setattr(cli, 'require_root', lambda: None)
        monkeypatch.setattr(cli, 'detect_platform', lambda: ubuntu)
        monkeypatch.setattr(cli, 'detect_hostname', lambda: 'web01.example.com')
        monkeypatch.setattr(cli, 'detect_ip', lambda: '10.0.0.5')
        monkeypatch.setattr(cli, 'log_system_metadata', lambda *args: None)

        config = tmp_path / 'deploy.yml'
        config.write_text(f"log_file: {tmp_path / 'deploy.log'}\nbackup_dir: {tmp_path / 'backups'}\n")

        recorded = {}

        class FakeDeployer:
            def __init__(self, ctx, catalog, confirm):
                recorded.update(ctx=ctx, catalog=catalog, confirm=confirm)

            def execute(self):
                if recorded.get('fail'):
                    raise DeployError('apt-get exploded')
                return True

        monkeypatch.setattr(cli, 'deployer_for', FakeDeployer)
        recorded['config'] = str(config)
        return recorded

    def test_agent_install(self, host):
        code = cli.agent_main(['--action', 'install', '--version', '7.0', '--server-ip', '10.0.0.1',
                               '--plugins', '--yes', '--config', host['config']])

        assert code == 0
        ctx = host['ctx']
        assert ctx.component == 'agent'
        assert ctx.version == '7.0'
        assert ctx.server_ip == '10.0.0.1'
        assert ctx.plugins
        assert ctx.auto_confirm
        assert ctx.hostname == 'web01.example.com'
        assert ctx.settings.backup_dir.endswith('backups')
        assert host['catalog'].component == 'agent'
        assert host['confirm'] is None

    def test_server_install_with_default_password(self, host):
        code = cli.main(['--component', 'server', '--action', 'install', '--version', '7.4', '--db', 'mysql',
                         '--webserver', 'nginx', '--default', '--hostname', 'zbx01', '--config', host['config']])

        assert code == 0
        ctx = host['ctx']
        assert ctx.db_kind == 'mysql'
        assert ctx.db_password == 'zabbix_password'
        assert ctx.hostname == 'zbx01'
        assert host['confirm'] is cli.ask_confirmation

    def test_validation_error_exits_1(self, host, capsys):
        assert cli.proxy_main(['--action', 'install', '--version', '7.0', '--db', 'sqlite']) == 1
        assert 'Critical Error: --server-ip is required' in capsys.readouterr().err
        assert 'ctx' not in host

    def test_deployment_failure_exits_1(self, host, capsys):
        host['fail'] = True
        code = cli.server_main(['--action', 'uninstall', '--yes', '--config', host['config']])
        assert code == 1
        assert 'Critical Error: apt-get exploded' in capsys.readouterr().err

    def test_missing_settings_file(self, host, tmp_path: Path, capsys):
        code = cli.agent_main(['--action', 'uninstall', '--config', str(tmp_path / 'absent.yml')])
        assert code == 1
        assert 'Config file not found' in capsys.readouterr().err

    def test_not_root(self, host, monkeypatch, capsys):
        def not_root():
            raise DeployError('This tool must be run as root')

        monkeypatch.setattr(cli, 'require_root', not_root)
        assert cli.agent_main(['--action', 'uninstall']) == 1
        assert 'must be run as root' in capsys.readouterr().err

    def test_status_runs_without_root(self, host, monkeypatch):
        def not_root():
            raise DeployError('This tool must be run as root')

        monkeypatch.setattr(cli, 'require_root', not_root)
        assert cli.proxy_main(['--action', 'status', '--db', 'sqlite', '--config', host['config']]) == 0
        assert host['ctx'].action == 'status'
        assert host['ctx'].version is None
