"""
Install, upgrade, uninstall and status flows for the Zabbix server, proxy and agent.

Each flow is a fixed sequence of steps. Any failing external command raises
and ends the action; the few best-effort steps log a warning and go on.
"""

import logging
import shutil
from pathlib import Path
from typing import Dict, List, Optional

from .catalog import Catalog, resolve_repository, select_packages
from .conffile import ConfigDocument, backup_config, reconcile_file, restore_from_backup
from .database import database_for, detect_database_kind, install_database_server, schema_path
from .errors import ValidationError, VerificationError
from .frontend import install_web_server, needs_ui_root, rewrite_frontend_paths, web_config_path, web_units
from .settings import db_name_for
from .shell import Systemd, command_exists, package_manager_for, run_command
from .verify import BINARIES, agent_ping, check_tcp, frontend_version, installed_version, verify_version

logger = logging.getLogger('zabbix_deploy')

PROXY_MODES = {'0': 'active', '1': 'passive'}


class Deployer:
    """Shared install/upgrade/uninstall sequence and the status report. Subclasses fill in the component specifics."""

    component = None
    services = ()
    uninstall_prefixes = ('zabbix',)

    def __init__(self, ctx, catalog=None, runner=run_command, package_manager=None, systemd=None,
                 confirm=None):
        self.ctx = ctx
        self.settings = ctx.settings
        self.run = runner
        self.catalog = catalog or Catalog.load(ctx.component, self.settings.catalog_path(ctx.component))
        self.pm = package_manager or package_manager_for(ctx.platform, runner, self.settings)
        self.systemd = systemd or Systemd(runner)
        self.confirm = confirm

    @property
    def binary(self) -> str:
        return BINARIES[self.component]

    def execute(self) -> bool:
        """Run the action from the context. Returns False when the operator cancelled."""
        actions = {
            'install': self.install,
            'upgrade': self.upgrade,
            'uninstall': self.uninstall,
            'status': self.status,
        }
        return actions[self.ctx.action]()

    def _confirm(self, question: str) -> bool:
        if self.ctx.auto_confirm or self.confirm is None:
            return True
        return self.confirm(question)

    # --- Resolution --- #

    def resolve(self):
        ctx = self.ctx
        source = resolve_repository(self.catalog, ctx.version, ctx.platform.distro,
                                    ctx.platform.distro_version, ctx.platform.arch)
        packages = select_packages(self.catalog, ctx.version, db_kind=ctx.db_kind, plugins=ctx.plugins,
                                   webserver=ctx.webserver, packager=self.pm.family)
        logger.info(f"Repository: {source.url}")
        logger.info(f"Packages: {' '.join(packages)}")
        return source, packages

    # --- Configuration plan --- #

    def base_plan(self) -> Dict[str, str]:
        raise NotImplementedError

    def overrides(self) -> Dict[str, str]:
        return self.settings.config_overrides(self.component)

    def plan(self) -> Dict[str, str]:
        plan = self.base_plan()
        plan.update(self.overrides())
        return plan

    @property
    def db_password(self) -> Optional[str]:
        return self.ctx.db_password or self.settings.default_db_password

    # --- Hooks --- #

    def units(self) -> List[str]:
        return list(self.services)

    def install_prerequisites(self):
        pass

    def setup_database(self):
        pass

    def backup_extra(self, record):
        pass

    def after_upgrade(self):
        pass

    def verify(self):
        for unit in self.services:
            if not self.systemd.is_active(unit):
                raise VerificationError(
                    f"{unit} service failed to start. Check logs: journalctl -u {unit} -n 50")
            logger.info(f"{unit} service is running")

    def drop_database(self):
        pass

    # --- Flows --- #

    def install(self) -> bool:
        ctx = self.ctx
        logger.info(f"Starting Zabbix {self.component} {ctx.version} installation")
        source, packages = self.resolve()
        if not self._confirm(f"Install Zabbix {self.component} {ctx.version}?"):
            logger.info("Installation cancelled by user")
            return False

        self.pm.install_repository(source, ctx.version, ctx.platform)
        self.install_prerequisites()
        self.pm.install(packages)
        self.setup_database()

        logger.info(f"Configuring {ctx.config_file}")
        reconcile_file(ctx.config_file, self.plan())

        units = self.units()
        self.systemd.enable(*units)
        self.systemd.restart(*units)
        self.verify()
        self.summary()
        logger.info(f"Zabbix {self.component} installation completed successfully")
        return True

    def upgrade(self) -> bool:
        ctx = self.ctx
        if not command_exists(self.binary):
            raise ValidationError(f"Zabbix {self.component} is not installed. Use --action install")

        old_version = installed_version(self.binary, self.run)
        logger.info(f"Starting Zabbix {self.component} upgrade: {old_version} -> {ctx.version}")
        source, packages = self.resolve()

        record = backup_config(ctx.config_file, self.settings.backup_dir, {
            'Component': self.component,
            'Installed version': old_version,
            'Target version': ctx.version,
        })
        if record:
            self.backup_extra(record)

        if not self._confirm(f"Upgrade Zabbix {self.component} from {old_version} to {ctx.version}?"):
            logger.info("Upgrade cancelled by user")
            return False

        units = self.units()
        self.systemd.stop(*units, check=False)
        if self.pm.family == 'apt':
            self.pm.purge_repository()
        self.pm.install_repository(source, ctx.version, ctx.platform)
        self.pm.upgrade(packages)
        self.after_upgrade()

        self.restore_configuration(record)

        self.systemd.restart(*units)
        new_version = self.check_upgraded_version()
        self.verify()
        logger.info(f"Zabbix {self.component} upgrade completed: {old_version} -> {new_version}")
        return True

    def restore_configuration(self, record):
        """
        Backed-up values are restored first and win over computed defaults;
        defaults only fill keys the backup never set. Settings overrides are
        applied last.
        """
        config_file = self.ctx.config_file
        backed_up = set()
        if record:
            restore_from_backup(config_file, record)
            backed_up = {key for key, _ in ConfigDocument.read(record.config_copy).active_settings()}

        fill = {key: value for key, value in self.base_plan().items() if key not in backed_up}
        fill.update(self.overrides())
        if fill:
            reconcile_file(config_file, fill)

    def check_upgraded_version(self) -> str:
        return installed_version(self.binary, self.run)

    def uninstall(self) -> bool:
        logger.info(f"Starting Zabbix {self.component} uninstallation")
        if not self._confirm(f"This will remove Zabbix {self.component} from this host. Continue?"):
            logger.info("Uninstallation cancelled by user")
            return False

        units = self.uninstall_units()
        self.systemd.stop(*units, check=False)
        self.systemd.disable(*units)

        packages = []
        for prefix in self.uninstall_prefixes:
            packages += [p for p in self.pm.installed_packages(prefix) if p not in packages]
        if packages:
            logger.info(f"Removing packages: {' '.join(packages)}")
            self.pm.remove(packages)
        else:
            logger.info(f"No Zabbix {self.component} packages installed")

        if not self.pm.installed_packages('zabbix'):
            self.pm.purge_repository()
        self.pm.clean()

        if self.ctx.purge_db:
            self.drop_database()
        logger.info(f"Zabbix {self.component} uninstallation completed")
        return True

    def uninstall_units(self) -> List[str]:
        return list(self.services)

    def status_package(self) -> str:
        raise NotImplementedError

    def status_report(self) -> Dict[str, object]:
        """Installed version and packages, repository files and the repository candidate. Changes nothing."""
        package = self.status_package()
        installed = installed_version(self.binary, self.run) if command_exists(self.binary) else None
        return {
            'installed_version': installed,
            'packages': self.pm.installed_packages('zabbix'),
            'repository_files': self.pm.repository_files(),
            'package': package,
            'candidate_version': self.pm.candidate_version(package),
        }

    def status(self) -> bool:
        report = self.status_report()
        logger.info(f"Zabbix {self.component} status:")
        logger.info(f"  Installed version: {report['installed_version'] or 'not installed'}")
        logger.info(f"  Installed packages: {' '.join(report['packages']) or 'none'}")
        logger.info(f"  Repository files: {', '.join(report['repository_files']) or 'none'}")
        logger.info(f"  Candidate {report['package']}: {report['candidate_version'] or 'not available'}")
        if not report['repository_files']:
            logger.warning("No Zabbix repository is configured")
        return True

    def summary(self):
        ctx = self.ctx
        logger.info("Summary:")
        logger.info(f"  Component: {self.component}")
        logger.info(f"  Version: {ctx.version}")
        logger.info(f"  Hostname: {ctx.hostname}")
        logger.info(f"  Configuration: {ctx.config_file}")


class _DatabaseMixin:
    """Database handling shared by the server and the proxy."""

    def database(self):
        ctx = self.ctx
        return database_for(ctx.db_kind, ctx.db_name, self.settings.db_user, self.db_password,
                            self.settings.db_host, self.run)

    def database_plan(self) -> Dict[str, str]:
        ctx = self.ctx
        if ctx.db_kind == 'sqlite':
            return {'DBName': ctx.db_name}
        return {
            'DBHost': self.settings.db_host,
            'DBName': ctx.db_name,
            'DBUser': self.settings.db_user,
            'DBPassword': self.db_password,
        }

    def install_prerequisites(self):
        install_database_server(self.ctx.db_kind, self.pm, self.systemd, self.run)

    def setup_database(self):
        ctx = self.ctx
        logger.info(f"Setting up database for {ctx.db_kind}...")
        schema = None if ctx.db_kind == 'sqlite' else schema_path(self.component, ctx.db_kind)
        self.database().bootstrap(schema)

    def drop_database(self):
        ctx = self.ctx
        db_kind = ctx.db_kind or detect_database_kind(self.systemd)
        if not db_kind:
            logger.warning("Could not determine the database type, database not removed")
            return
        db_name = db_name_for(self.component, db_kind)
        logger.info(f"Dropping {db_kind} database {db_name}")
        database_for(db_kind, db_name, self.settings.db_user, self.db_password,
                     self.settings.db_host, self.run).drop()


class ServerDeployer(_DatabaseMixin, Deployer):
    component = 'server'
    services = ('zabbix-server', 'zabbix-agent2')
    uninstall_prefixes = ('zabbix',)

    frontend_dirs = ('/etc/zabbix', '/etc/apache2', '/etc/httpd', '/etc/nginx', '/usr/share/zabbix')

    def units(self) -> List[str]:
        return list(self.services) + web_units(self.ctx.webserver, self.pm.family, self.systemd)

    def uninstall_units(self) -> List[str]:
        return ['zabbix-server', 'zabbix-agent', 'zabbix-agent2']

    def status_package(self) -> str:
        return f"zabbix-server-{self.ctx.db_kind or 'mysql'}"

    def base_plan(self) -> Dict[str, str]:
        return self.database_plan()

    def install_prerequisites(self):
        super().install_prerequisites()
        install_web_server(self.ctx.webserver, self.pm, self.systemd)

    def backup_extra(self, record):
        """Copy the configuration trees and the frontend, then dump the database."""
        for directory in self.frontend_dirs:
            source = Path(directory)
            if not source.is_dir():
                continue
            target = record.directory / directory.strip('/').replace('/', '_')
            shutil.copytree(source, target, symlinks=True, dirs_exist_ok=True)
            logger.info(f"Backed up {source} to {target}")

        password = ConfigDocument.read(record.config_copy).get('DBPassword') or self.ctx.db_password
        database_for(self.ctx.db_kind, self.ctx.db_name, self.settings.db_user, password,
                     self.settings.db_host, self.run).dump(record.directory)

    def after_upgrade(self):
        if not needs_ui_root(self.ctx.version):
            return
        try:
            rewrite_frontend_paths(web_config_path(self.ctx.webserver, self.pm.family))
        except OSError as e:
            logger.warning(f"Failed to update web server configuration: {e}")

    def check_upgraded_version(self) -> str:
        return verify_version(self.binary, self.ctx.version, self.run)

    def verify(self):
        super().verify()
        frontend_version(self.settings.frontend_url)
        agent_ping()


class ProxyDeployer(_DatabaseMixin, Deployer):
    component = 'proxy'
    services = ('zabbix-proxy',)
    uninstall_prefixes = ('zabbix-proxy',)

    def status_package(self) -> str:
        db_kind = self.ctx.db_kind or 'mysql'
        return f"zabbix-proxy-{'sqlite3' if db_kind == 'sqlite' else db_kind}"

    def base_plan(self) -> Dict[str, str]:
        ctx = self.ctx
        plan = {}
        if ctx.server_ip:
            plan['Server'] = ctx.server_ip
        plan['Hostname'] = ctx.hostname
        plan['ProxyMode'] = ctx.proxy_mode
        plan.update(self.database_plan())
        return plan

    def verify(self):
        super().verify()
        if self.ctx.server_ip:
            check_tcp(self.ctx.server_ip)

    def summary(self):
        super().summary()
        ctx = self.ctx
        logger.info(f"  Server: {ctx.server_ip}")
        logger.info(f"  ProxyMode: {ctx.proxy_mode} ({PROXY_MODES.get(ctx.proxy_mode, 'unknown')})")
        logger.info(f"  Database: {ctx.db_kind}")


class AgentDeployer(Deployer):
    component = 'agent'
    services = ('zabbix-agent2',)
    uninstall_prefixes = ('zabbix-agent',)

    def status_package(self) -> str:
        return 'zabbix-agent2'

    def base_plan(self) -> Dict[str, str]:
        ctx = self.ctx
        plan = {}
        if ctx.server_ip:
            plan['Server'] = ctx.server_ip
            plan['ServerActive'] = ctx.server_ip
        plan['Hostname'] = ctx.hostname
        plan['ListenIP'] = '0.0.0.0'
        plan['HostMetadata'] = f"Linux {ctx.platform.pretty_name}".strip()
        return plan

    def verify(self):
        super().verify()
        if self.ctx.server_ip:
            check_tcp(self.ctx.server_ip)
        agent_ping()

    def summary(self):
        super().summary()
        logger.info(f"  Server: {self.ctx.server_ip}")
        logger.info(f"  IP Address: {self.ctx.ip_address}")


DEPLOYERS = {cls.component: cls for cls in (ServerDeployer, ProxyDeployer, AgentDeployer)}


def deployer_for(ctx, **kwargs) -> Deployer:
    return DEPLOYERS[ctx.component](ctx, **kwargs)
