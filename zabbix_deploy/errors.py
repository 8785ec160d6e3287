"""Exceptions raised by zabbix_deploy."""


class DeployError(Exception):
    pass


class ValidationError(DeployError):
    pass


class ConfigurationError(DeployError):
    pass


class CatalogError(DeployError):
    pass


class UnknownVersion(CatalogError):
    def __init__(self, version, supported=()):
        self.version = version
        self.supported = tuple(supported)
        allowed = ', '.join(self.supported) or 'none'
        super().__init__(f"Unknown Zabbix version: {version} (supported: {allowed})")


class UnsupportedPlatform(CatalogError):
    def __init__(self, version, distro, distro_version, arch):
        self.version = version
        self.distro = distro
        self.distro_version = distro_version
        self.arch = arch
        super().__init__(
            f"No repository found for {distro} {distro_version} {arch} (version {version})"
        )


class NoPackagesForCombination(CatalogError):
    def __init__(self, component, version, kind):
        self.component = component
        self.version = version
        self.kind = kind
        super().__init__(f"No {component} packages found for version {version} with {kind}")


class CommandError(DeployError):
    def __init__(self, command, returncode=None, stderr=''):
        self.command = command
        self.returncode = returncode
        self.stderr = (stderr or '').strip()
        msg = f"Command failed ({returncode}): {command}"
        if self.stderr:
            msg += f": {self.stderr}"
        super().__init__(msg)


class DatabaseError(DeployError):
    """A database bootstrap step failed. ``step`` names the step."""

    def __init__(self, step, message):
        self.step = step
        super().__init__(f"Database step '{step}' failed: {message}")


class ConfigFileMissing(DeployError):
    def __init__(self, path):
        self.path = str(path)
        super().__init__(f"Configuration file not found: {path}")


class VerificationError(DeployError):
    pass
