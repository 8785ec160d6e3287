"""Web server handling for the Zabbix frontend."""

import logging
import shutil
from datetime import datetime
from pathlib import Path
from typing import List

logger = logging.getLogger('zabbix_deploy')

FRONTEND_ROOT = '/usr/share/zabbix'
FRONTEND_UI_ROOT = '/usr/share/zabbix/ui'
# 7.2 moved the frontend document root into ui/
UI_ROOT_SINCE = (7, 2)

APACHE_CONFIGS = {
    'apt': '/etc/apache2/conf-available/zabbix.conf',
    'dnf': '/etc/httpd/conf.d/zabbix.conf',
    'zypper': '/etc/apache2/conf.d/zabbix.conf',
}
NGINX_CONFIG = '/etc/nginx/conf.d/zabbix.conf'


def web_config_path(webserver: str, packager: str) -> Path:
    if webserver == 'nginx':
        return Path(NGINX_CONFIG)
    return Path(APACHE_CONFIGS[packager])


def web_units(webserver: str, packager: str, systemd) -> List[str]:
    """systemd units serving the frontend."""
    if webserver == 'nginx':
        php_fpm = systemd.php_fpm_unit() if packager == 'apt' else 'php-fpm'
        return ['nginx', php_fpm]
    if packager == 'dnf':
        return ['httpd', 'php-fpm']
    return ['apache2']


def install_web_server(webserver: str, package_manager, systemd):
    """Debian-family hosts need the web server installed explicitly."""
    if package_manager.family != 'apt':
        return
    if webserver == 'nginx':
        package_manager.install(['nginx', systemd.php_fpm_unit()])
    else:
        package_manager.install(['apache2'])


def needs_ui_root(version: str) -> bool:
    major, minor = (int(part) for part in version.split('.')[:2])
    return (major, minor) >= UI_ROOT_SINCE


def rewrite_frontend_paths(config_path) -> bool:
    """
    Point a web server config at the 7.2+ frontend location.

    Returns True when the file was changed. A copy of the original is kept
    next to it.
    """
    config_path = Path(config_path)
    if not config_path.exists():
        logger.warning(f"Web server configuration file not found at {config_path}")
        return False

    text = config_path.read_text()
    if FRONTEND_ROOT not in text or FRONTEND_UI_ROOT in text:
        logger.info(f"Frontend path in {config_path} already up to date")
        return False

    backup = config_path.with_name(f"{config_path.name}.bak-{datetime.now().strftime('%Y%m%d_%H%M%S')}")
    shutil.copy2(config_path, backup)
    config_path.write_text(text.replace(FRONTEND_ROOT, FRONTEND_UI_ROOT))
    logger.info(f"Updated frontend path to {FRONTEND_UI_ROOT} in {config_path} (backup: {backup})")
    return True
