"""Post-deployment checks: versions, connectivity, agent and frontend."""

import logging
import re
import socket
from typing import Optional

from zabbix_utils import Getter, ZabbixAPI
from zabbix_utils.exceptions import ModuleBaseException

from .errors import CommandError, VerificationError
from .shell import run_command

logger = logging.getLogger('zabbix_deploy')

SERVER_PORT = 10051
AGENT_PORT = 10050
VERSION_RE = re.compile(r'(\d+)\.(\d+)(?:\.(\d+))?')

BINARIES = {
    'server': 'zabbix_server',
    'proxy': 'zabbix_proxy',
    'agent': 'zabbix_agent2',
}


def check_tcp(host: str, port: int = SERVER_PORT, timeout: float = 5) -> bool:
    """Raw TCP reachability check. A failure is only a warning."""
    logger.info(f"Testing connectivity to {host}:{port}...")
    try:
        with socket.create_connection((host, port), timeout=timeout):
            pass
    except OSError as e:
        logger.warning(f"Cannot reach {host}:{port} ({e})")
        return False
    logger.info(f"Can reach {host}:{port}")
    return True


def parse_version(output: str) -> str:
    first_line = output.strip().splitlines()[0] if output.strip() else ''
    match = VERSION_RE.search(first_line)
    return match.group(0) if match else 'unknown'


def installed_version(binary: str, runner=run_command) -> str:
    """Version reported by ``<binary> -V`` or ``unknown``."""
    try:
        result = runner([binary, '-V'], check=False)
    except CommandError:
        return 'unknown'
    if result.returncode != 0:
        return 'unknown'
    return parse_version(result.stdout or '')


def major_minor(version: str) -> Optional[str]:
    match = VERSION_RE.match(version or '')
    return f"{match.group(1)}.{match.group(2)}" if match else None


def verify_version(binary: str, expected: str, runner=run_command) -> str:
    """Fail unless the installed major.minor equals ``expected``."""
    version = installed_version(binary, runner)
    if major_minor(version) != expected:
        raise VerificationError(f"Installed {binary} version is {version}, expected {expected}")
    logger.info(f"Verified {binary} version {version}")
    return version


def agent_ping(host: str = '127.0.0.1', port: int = AGENT_PORT, timeout: int = 5) -> Optional[str]:
    """Ask a running agent for its version."""
    try:
        response = Getter(host=host, port=port, timeout=timeout).get('agent.version')
    except (ModuleBaseException, OSError) as e:
        logger.warning(f"Agent at {host}:{port} did not answer: {e}")
        return None
    if response is None or response.error:
        logger.warning(f"Agent at {host}:{port} returned an error: {getattr(response, 'error', None)}")
        return None
    logger.info(f"Agent at {host}:{port} reports version {response.value}")
    return response.value


def frontend_version(url: str) -> Optional[str]:
    """API version of the web frontend."""
    try:
        api = ZabbixAPI(url=url, skip_version_check=True)
        version = str(api.api_version())
    except (ModuleBaseException, OSError) as e:
        logger.warning(f"Frontend API at {url} is not reachable: {e}")
        return None
    logger.info(f"Frontend API at {url} reports version {version}")
    return version
