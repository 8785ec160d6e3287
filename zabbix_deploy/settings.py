"""
Settings and per-run context.

Settings come from an optional YAML file (``/etc/zabbix/zabbix_deploy.yml``
by default)::

    logging: console            # or syslog
    log_file: /var/log/zabbix_deploy.log
    backup_dir: /opt/zabbix-config-backup
    download_dir: /tmp
    release_package_dir: /opt/zabbix-release
    catalog_dir: /etc/zabbix/catalogs
    frontend_url: http://localhost/zabbix
    database:
      host: localhost
      user: zabbix
      default_password: zabbix_password
    overrides:
      server:
        StartPollers: 10
      agent:
        Timeout: 10
"""

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from .errors import ConfigurationError

logger = logging.getLogger('zabbix_deploy')

DEFAULT_SETTINGS_PATH = '/etc/zabbix/zabbix_deploy.yml'
DEFAULT_DB_PASSWORD = 'zabbix_password'

CONFIG_FILES = {
    'server': '/etc/zabbix/zabbix_server.conf',
    'proxy': '/etc/zabbix/zabbix_proxy.conf',
    'agent': '/etc/zabbix/zabbix_agent2.conf',
}

LOG_FILES = {
    'server': '/var/log/zabbix_install.log',
    'proxy': '/var/log/zabbix_proxy_install.log',
    'agent': '/var/log/zabbix_agent_install.log',
}

DB_NAMES = {
    'server': 'zabbix',
    'proxy': 'zabbix_proxy',
}

SQLITE_DB_PATH = '/var/lib/zabbix/zabbix_proxy.db'


@dataclass(frozen=True)
class Settings:
    logging: str = 'console'
    log_file: Optional[str] = None
    backup_dir: str = '/opt/zabbix-config-backup'
    download_dir: str = '/tmp'
    release_package_dir: Optional[str] = None
    catalog_dir: Optional[str] = None
    frontend_url: str = 'http://localhost/zabbix'
    db_host: str = 'localhost'
    db_user: str = 'zabbix'
    default_db_password: str = DEFAULT_DB_PASSWORD
    overrides: Dict[str, Dict[str, Any]] = field(default_factory=dict)

    def log_file_for(self, component: str) -> str:
        return self.log_file or LOG_FILES[component]

    def config_overrides(self, component: str) -> Dict[str, str]:
        return {str(k): v if isinstance(v, list) else str(v)
                for k, v in (self.overrides.get(component) or {}).items()}

    def catalog_path(self, component: str) -> Optional[Path]:
        if not self.catalog_dir:
            return None
        return Path(self.catalog_dir) / f"{component}.json"


def load_settings(path: Optional[str] = None) -> Settings:
    """
    Read settings from ``path``. Without an explicit path the default file is
    optional; an explicit path that does not exist is an error.
    """
    explicit = path is not None
    path = path or DEFAULT_SETTINGS_PATH
    if not os.path.exists(path):
        if explicit:
            raise ConfigurationError(f"Config file not found: {path}")
        return Settings()

    try:
        with open(path, 'r') as f:
            config = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as e:
        raise ConfigurationError(f"Could not read config file {path}: {e}")

    if not isinstance(config, dict):
        raise ConfigurationError(f"Config file {path} must contain a mapping")

    log_type = config.get('logging', 'console')
    if log_type not in ('console', 'syslog'):
        raise ConfigurationError(f"Invalid logging target '{log_type}' (expected console or syslog)")

    db_conf = config.get('database') or {}
    if not isinstance(db_conf, dict):
        raise ConfigurationError("'database' must be a mapping with host, user and default_password")
    overrides = config.get('overrides') or {}
    if not isinstance(overrides, dict) or not all(isinstance(v, dict) for v in overrides.values() if v):
        raise ConfigurationError("'overrides' must map a component to Key: value pairs")

    defaults = Settings()
    return Settings(
        logging=log_type,
        log_file=config.get('log_file'),
        backup_dir=config.get('backup_dir', defaults.backup_dir),
        download_dir=config.get('download_dir', defaults.download_dir),
        release_package_dir=config.get('release_package_dir'),
        catalog_dir=config.get('catalog_dir'),
        frontend_url=config.get('frontend_url', defaults.frontend_url),
        db_host=db_conf.get('host', defaults.db_host),
        db_user=db_conf.get('user', defaults.db_user),
        default_db_password=str(db_conf.get('default_password', defaults.default_db_password)),
        overrides=overrides,
    )


@dataclass(frozen=True)
class PlatformInfo:
    distro: str
    distro_version: str
    arch: str
    pretty_name: str = ''

    @property
    def packager(self) -> str:
        if self.distro in ('ubuntu', 'debian', 'raspbian'):
            return 'apt'
        if self.distro == 'sles':
            return 'zypper'
        return 'dnf'


@dataclass(frozen=True)
class DeployContext:
    component: str
    action: str
    version: Optional[str]
    platform: PlatformInfo
    hostname: str
    ip_address: str = ''
    server_ip: Optional[str] = None
    db_kind: Optional[str] = None
    webserver: Optional[str] = None
    plugins: bool = False
    proxy_mode: str = '0'
    db_password: Optional[str] = None
    auto_confirm: bool = False
    purge_db: bool = False
    settings: Settings = field(default_factory=Settings)

    @property
    def config_file(self) -> str:
        return CONFIG_FILES[self.component]

    @property
    def db_name(self) -> str:
        return db_name_for(self.component, self.db_kind)


def db_name_for(component: str, db_kind: Optional[str]) -> str:
    if db_kind == 'sqlite':
        return SQLITE_DB_PATH
    return DB_NAMES.get(component, 'zabbix')
