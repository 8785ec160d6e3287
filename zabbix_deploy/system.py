"""Host facts: OS release, architecture, hostname and primary address."""

import logging
import os
import platform
import shutil
import socket

from .errors import ValidationError
from .settings import PlatformInfo

logger = logging.getLogger('zabbix_deploy')

OS_RELEASE = '/etc/os-release'

ARCH_ALIASES = {
    'x86_64': 'amd64',
    'amd64': 'amd64',
    'aarch64': 'arm64',
    'arm64': 'arm64',
}

# os-release IDs that the catalog knows under another name
DISTRO_ALIASES = {
    'amzn': 'amazonlinux',
    'almalinux': 'alma',
    'ol': 'oracle',
    'sles_sap': 'sles',
}

# These publish one repository per major release
MAJOR_VERSION_DISTROS = ('rhel', 'rocky', 'alma', 'oracle', 'centos', 'sles')


def read_os_release(path=OS_RELEASE):
    if not os.path.exists(path):
        raise ValidationError(f"Cannot detect OS information: {path} not found")

    info = {}
    with open(path, 'r') as f:
        for line in f:
            line = line.strip()
            if not line or line.startswith('#') or '=' not in line:
                continue
            key, value = line.split('=', 1)
            info[key] = value.strip().strip('"\'')
    return info


def normalize_arch(machine):
    try:
        return ARCH_ALIASES[machine]
    except KeyError:
        raise ValidationError(f"Unsupported architecture: {machine}")


def detect_platform(os_release_path=OS_RELEASE, machine=None):
    info = read_os_release(os_release_path)
    distro = info.get('ID', '').lower()
    if not distro:
        raise ValidationError("Cannot detect OS information: no ID in os-release")
    distro = DISTRO_ALIASES.get(distro, distro)

    distro_version = info.get('VERSION_ID', '')
    if distro in MAJOR_VERSION_DISTROS:
        distro_version = distro_version.split('.')[0]

    arch = normalize_arch(machine or platform.machine())
    detected = PlatformInfo(distro, distro_version, arch, info.get('PRETTY_NAME', f"{distro} {distro_version}"))
    logger.info(f"Detected OS: {detected.distro} {detected.distro_version} ({detected.arch})")
    return detected


def detect_hostname():
    return socket.getfqdn() or socket.gethostname()


def detect_ip():
    """Source address of the default route, like ``ip route get 8.8.8.8``."""
    try:
        with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as s:
            s.connect(('8.8.8.8', 80))
            return s.getsockname()[0]
    except OSError:
        pass
    try:
        return socket.gethostbyname(socket.gethostname())
    except OSError as e:
        logger.debug(f"Could not determine IP address: {e}")
        return ''


def require_root():
    if os.geteuid() != 0:
        raise ValidationError("This tool must be run as root")


def _total_memory():
    try:
        with open('/proc/meminfo', 'r') as f:
            for line in f:
                if line.startswith('MemTotal:'):
                    kb = int(line.split()[1])
                    return f"{kb / 1024 / 1024:.1f}G"
    except (OSError, ValueError, IndexError):
        pass
    return 'unknown'


def log_system_metadata(platform_info, hostname, ip_address):
    logger.info("Detecting system metadata...")
    logger.info(f"Hostname: {hostname}")
    logger.info(f"IP Address: {ip_address or 'unknown'}")
    logger.info(f"CPU: {platform.processor() or platform.machine()} ({os.cpu_count()} cores)")
    logger.info(f"Memory: {_total_memory()}")
    logger.info(f"Root Disk: {shutil.disk_usage('/').total / 1024 ** 3:.1f}G")
    logger.info(f"OS: {platform_info.pretty_name}")
    logger.info(f"Architecture: {platform_info.arch}")
    logger.info(f"Kernel: {platform.release()}")
