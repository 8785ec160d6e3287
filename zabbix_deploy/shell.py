"""
External command layer: package managers and systemd.

Every command goes through ``run_command`` so that it is logged before it
runs and a non-zero exit raises ``CommandError``.
"""

import glob
import logging
import os
import shlex
import shutil
import subprocess
from pathlib import Path

import requests

from .errors import CommandError, DeployError

logger = logging.getLogger('zabbix_deploy')

DOWNLOAD_TIMEOUT = 30
PHP_FPM_UNITS = ['php8.3-fpm', 'php8.2-fpm', 'php8.1-fpm', 'php8.0-fpm', 'php7.4-fpm', 'php-fpm']


def format_command(command):
    if isinstance(command, str):
        return command
    return ' '.join(shlex.quote(str(part)) for part in command)


def run_command(command, check=True, log_output=False, input=None, env=None):
    """Run a command and return the CompletedProcess."""
    printable = format_command(command)
    logger.info(f"Running: {printable}")

    full_env = None
    if env:
        full_env = dict(os.environ)
        full_env.update(env)

    try:
        result = subprocess.run(
            command,
            shell=isinstance(command, str),
            capture_output=True,
            text=not isinstance(input, bytes),
            input=input,
            env=full_env,
        )
    except OSError as e:
        logger.error(f"Command failed: {printable}")
        raise CommandError(printable, None, str(e))

    if log_output and result.stdout:
        output = result.stdout if isinstance(result.stdout, str) else result.stdout.decode(errors='replace')
        logger.debug(f"Output: {output.strip()}")

    if check and result.returncode != 0:
        stderr = result.stderr if isinstance(result.stderr, str) else result.stderr.decode(errors='replace')
        logger.error(f"Command failed: {printable}")
        if stderr:
            logger.error(f"Error: {stderr.strip()}")
        raise CommandError(printable, result.returncode, stderr)
    return result


def command_exists(name):
    return shutil.which(name) is not None


def download(url, target, timeout=DOWNLOAD_TIMEOUT):
    logger.info(f"Downloading from: {url}")
    with requests.get(url, timeout=timeout, stream=True) as response:
        response.raise_for_status()
        with open(target, 'wb') as f:
            for chunk in response.iter_content(chunk_size=65536):
                f.write(chunk)
    return Path(target)


class PackageManager:
    """Common interface of the apt, dnf and zypper wrappers."""

    family = None
    repo_glob = None

    def __init__(self, runner=run_command, download_dir='/tmp', release_package_dir=None):
        self.run = runner
        self.download_dir = Path(download_dir)
        self.release_package_dir = release_package_dir

    def install_repository(self, source, version, platform):
        raise NotImplementedError

    def refresh(self):
        pass

    def install(self, packages):
        raise NotImplementedError

    def upgrade(self, packages):
        raise NotImplementedError

    def remove(self, packages):
        raise NotImplementedError

    def installed_packages(self, prefix='zabbix'):
        raise NotImplementedError

    def candidate_version(self, package):
        """Version the configured repositories would install, or None."""
        raise NotImplementedError

    def repository_files(self):
        return sorted(glob.glob(self.repo_glob)) if self.repo_glob else []

    def purge_repository(self):
        pass

    def clean(self):
        pass


class Apt(PackageManager):
    family = 'apt'
    env = {'DEBIAN_FRONTEND': 'noninteractive'}
    sources_glob = '/etc/apt/sources.list.d/zabbix*.list*'

    def _local_release_package(self, version, platform, any_match=False):
        if not self.release_package_dir:
            return None
        base = Path(self.release_package_dir)
        tag = f"{platform.distro}{platform.distro_version}"
        for name in (f"zabbix-release_latest_{version}+{tag}_all.deb", f"zabbix-release_{version}-1+{tag}_all.deb"):
            if (base / name).exists():
                return base / name
        if any_match:
            matches = sorted(glob.glob(str(base / f"zabbix-release*{version}*.deb")))
            if matches:
                return Path(matches[0])
        return None

    def fetch_release_package(self, url, version, platform):
        """Local release package first, then download, then any local match."""
        self.download_dir.mkdir(parents=True, exist_ok=True)
        target = self.download_dir / 'zabbix-release.deb'

        local = self._local_release_package(version, platform)
        if local:
            logger.info(f"Using local repository package: {local.name}")
            shutil.copy(local, target)
            return target

        try:
            return download(url, target)
        except requests.RequestException as e:
            local = self._local_release_package(version, platform, any_match=True)
            if not local:
                raise DeployError(f"Failed to download repository package {url} and no local package found: {e}")
            logger.warning(f"Download failed, using available local package: {local.name}")
            shutil.copy(local, target)
            return target

    def install_repository(self, source, version, platform):
        deb_file = self.fetch_release_package(source.url, version, platform)
        try:
            self.run(['dpkg', '-i', str(deb_file)])
        finally:
            deb_file.unlink(missing_ok=True)
        self.refresh()

    def refresh(self):
        self.run(['apt-get', 'update'], env=self.env)

    def install(self, packages):
        self.run(['apt-get', 'install', '-y'] + list(packages), env=self.env)

    def upgrade(self, packages):
        # install rather than --only-upgrade so a new major version is picked up;
        # packaged config files replace the old ones, values are restored afterwards
        self.run(['apt-get', 'install', '-y', '-o', 'Dpkg::Options::=--force-confnew'] + list(packages),
                 env=self.env)

    def remove(self, packages):
        self.run(['apt-get', 'remove', '--purge', '-y'] + list(packages), env=self.env)
        if self.run(['apt-get', 'autoremove', '-y'], check=False, env=self.env).returncode != 0:
            logger.warning("Failed to autoremove packages")

    def installed_packages(self, prefix='zabbix'):
        result = self.run(['dpkg-query', '-W', '-f', '${Status} ${Package}\n', f"{prefix}*"], check=False)
        packages = []
        for line in (result.stdout or '').splitlines():
            parts = line.split()
            if len(parts) == 4 and parts[:3] == ['install', 'ok', 'installed']:
                packages.append(parts[3])
        return packages

    def candidate_version(self, package):
        result = self.run(['apt-cache', 'policy', package], check=False)
        for line in (result.stdout or '').splitlines():
            key, _, value = line.strip().partition(':')
            if key == 'Candidate':
                value = value.strip()
                return None if value in ('', '(none)') else value
        return None

    def repository_files(self):
        return sorted(glob.glob(self.sources_glob))

    def purge_repository(self):
        logger.info("Removing old Zabbix repository package...")
        self.run(['dpkg', '--purge', 'zabbix-release'], check=False)
        for path in glob.glob(self.sources_glob):
            os.remove(path)
            logger.debug(f"Removed {path}")

    def clean(self):
        self.run(['apt-get', 'clean'], check=False)


class Dnf(PackageManager):
    family = 'dnf'
    epel_repo = '/etc/yum.repos.d/epel.repo'
    repo_glob = '/etc/yum.repos.d/zabbix*.repo'

    def install_repository(self, source, version, platform):
        command = ['rpm', '-Uvh', '--replacepkgs']
        if source.requires_unsigned_install:
            command.append('--nosignature')
        self.run(command + [source.url])
        self.run(['dnf', 'clean', 'all'])
        self.exclude_from_epel()

    def exclude_from_epel(self):
        """EPEL ships its own zabbix packages; keep them out of the way."""
        if not os.path.exists(self.epel_repo):
            return
        with open(self.epel_repo, 'r') as f:
            lines = f.readlines()
        if any(line.strip() == 'excludepkgs=zabbix*' for line in lines):
            return
        updated = []
        for line in lines:
            updated.append(line)
            if line.strip() == '[epel]':
                updated.append('excludepkgs=zabbix*\n')
        with open(self.epel_repo, 'w') as f:
            f.writelines(updated)
        logger.info(f"Excluded zabbix packages from {self.epel_repo}")

    def refresh(self):
        if self.run(['dnf', 'makecache'], check=False).returncode != 0:
            logger.warning("Failed to rebuild dnf cache")

    def install(self, packages):
        self.run(['dnf', 'install', '-y'] + list(packages))

    def upgrade(self, packages):
        self.run(['dnf', 'upgrade', '-y'] + list(packages))

    def remove(self, packages):
        self.run(['dnf', 'remove', '-y'] + list(packages))

    def installed_packages(self, prefix='zabbix'):
        result = self.run(['rpm', '-qa', '--qf', '%{NAME}\n', f"{prefix}*"], check=False)
        return [line.strip() for line in (result.stdout or '').splitlines() if line.strip()]

    def candidate_version(self, package):
        result = self.run(['dnf', 'repoquery', '--latest-limit', '1', '--qf', '%{version}-%{release}', package],
                          check=False)
        lines = [line.strip() for line in (result.stdout or '').splitlines() if line.strip()]
        if result.returncode != 0 or not lines:
            return None
        return lines[-1]

    def purge_repository(self):
        self.run(['rpm', '-e', 'zabbix-release'], check=False)

    def clean(self):
        if self.run(['dnf', 'clean', 'all'], check=False).returncode != 0:
            logger.warning("Failed to clean dnf cache")


class Zypper(Dnf):
    family = 'zypper'
    repo_name = 'Zabbix Official Repository'
    repo_glob = '/etc/zypp/repos.d/zabbix*.repo'

    def install_repository(self, source, version, platform):
        command = ['rpm', '-Uvh', '--replacepkgs']
        if source.requires_unsigned_install:
            command.append('--nosignature')
        self.run(command + [source.url])
        self.refresh()

    def refresh(self):
        self.run(['zypper', '--gpg-auto-import-keys', 'refresh', self.repo_name])

    def install(self, packages):
        self.run(['zypper', '--non-interactive', 'install', '-y'] + list(packages))

    def upgrade(self, packages):
        self.run(['zypper', '--non-interactive', 'install', '-y', '--force'] + list(packages))

    def remove(self, packages):
        self.run(['zypper', '--non-interactive', 'remove', '-y'] + list(packages))

    def candidate_version(self, package):
        result = self.run(['zypper', '--non-interactive', 'info', package], check=False)
        for line in (result.stdout or '').splitlines():
            key, _, value = line.partition(':')
            if key.strip() == 'Version':
                return value.strip() or None
        return None

    def clean(self):
        if self.run(['zypper', 'clean'], check=False).returncode != 0:
            logger.warning("Failed to clean zypper cache")


PACKAGE_MANAGERS = {cls.family: cls for cls in (Apt, Dnf, Zypper)}


def package_manager_for(platform, runner=run_command, settings=None):
    cls = PACKAGE_MANAGERS[platform.packager]
    if settings is None:
        return cls(runner)
    return cls(runner, download_dir=settings.download_dir, release_package_dir=settings.release_package_dir)


class Systemd:
    def __init__(self, runner=run_command):
        self.run = runner

    def daemon_reload(self):
        self.run(['systemctl', 'daemon-reload'])

    def enable(self, *units):
        self.run(['systemctl', 'enable'] + list(units))

    def disable(self, *units):
        return self.run(['systemctl', 'disable'] + list(units), check=False).returncode == 0

    def start(self, *units):
        self.run(['systemctl', 'start'] + list(units))

    def stop(self, *units, check=True):
        return self.run(['systemctl', 'stop'] + list(units), check=check).returncode == 0

    def restart(self, *units):
        self.run(['systemctl', 'restart'] + list(units))

    def is_active(self, unit):
        return self.run(['systemctl', 'is-active', '--quiet', unit], check=False).returncode == 0

    def unit_exists(self, unit):
        result = self.run(['systemctl', 'list-unit-files', f"{unit}.service"], check=False)
        return result.returncode == 0 and f"{unit}.service" in (result.stdout or '')

    def php_fpm_unit(self):
        """First installed PHP-FPM unit, newest PHP first."""
        for unit in PHP_FPM_UNITS:
            if self.unit_exists(unit):
                return unit
        return 'php-fpm'
