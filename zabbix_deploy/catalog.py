"""
Repository catalog
==================

Maps a (component, version, distro, distro version, architecture) tuple to the
zabbix-release package that configures the official repository, and a
(component, version, database, plugins) selection to the packages to install.

The catalog is a JSON document per component::

    versions.<version>.<distro>.<distro_version>.<arch> -> URL
    versions.<version>.packages.<kind>[]                -> package name

``<arch>`` is ``amd64``, ``arm64`` or ``noarch`` for the generic tree that
carries every architecture.
"""

import json
import logging
from pathlib import Path
from typing import Dict, List, NamedTuple, Optional

from .errors import CatalogError, NoPackagesForCombination, UnknownVersion, UnsupportedPlatform

logger = logging.getLogger('zabbix_deploy')

CATALOG_DIR = Path(__file__).parent / 'catalogs'

COMPONENTS = ('server', 'proxy', 'agent')
SUPPORTED_VERSIONS = ('6.0', '7.0', '7.2', '7.4')
ARCHITECTURES = ('amd64', 'arm64')
GENERIC_ARCH = 'noarch'

DATABASE_KINDS = {
    'server': ('mysql', 'pgsql'),
    'proxy': ('mysql', 'pgsql', 'sqlite'),
    'agent': (),
}

# Versions whose generic Debian-family tree already ships every architecture.
# Pairs not listed here still publish a separate "<distro>-arm64" tree, so the
# arch-specific entry is the only valid one.
MULTIARCH_REPOS = {
    'ubuntu': ('7.2', '7.4'),
    'debian': ('6.0', '7.2', '7.4'),
    'raspbian': ('6.0', '7.2', '7.4'),
}

# Release packages for these distros are not signed with a key rpm knows about.
UNSIGNED_REPO_DISTROS = ('sles',)

PACKAGES_KEY = 'packages'
OVERRIDES_KEY = 'overrides'


class RepositorySource(NamedTuple):
    url: str
    requires_unsigned_install: bool = False


class Catalog:
    """Typed, read-only view of a component's repository catalog."""

    def __init__(self, component: str, versions: Dict[str, dict], source: Optional[str] = None):
        if component not in COMPONENTS:
            raise CatalogError(f"Unknown component: {component}")
        self.component = component
        self.source = source
        self._repos: Dict[str, Dict[str, Dict[str, Dict[str, str]]]] = {}
        self._packages: Dict[str, Dict[str, List[str]]] = {}
        self._overrides: Dict[str, Dict[str, Dict[str, List[str]]]] = {}

        if not isinstance(versions, dict):
            raise CatalogError(f"Catalog {source or component}: 'versions' must be a mapping")
        for version, body in versions.items():
            self._parse_version(str(version), body)

    @classmethod
    def load(cls, component: str, path=None) -> 'Catalog':
        """Load the bundled catalog for ``component`` or the file at ``path``."""
        catalog_path = Path(path) if path else CATALOG_DIR / f"{component}.json"
        if not catalog_path.exists():
            raise CatalogError(f"Catalog file not found: {catalog_path}")
        try:
            with open(catalog_path, 'r') as f:
                data = json.load(f)
        except (OSError, ValueError) as e:
            raise CatalogError(f"Could not read catalog {catalog_path}: {e}")

        if not isinstance(data, dict) or 'versions' not in data:
            raise CatalogError(f"Catalog {catalog_path} has no 'versions' section")
        declared = data.get('component', component)
        if declared != component:
            raise CatalogError(f"Catalog {catalog_path} is for '{declared}', not '{component}'")

        logger.debug(f"Loaded {component} catalog from {catalog_path}")
        return cls(component, data['versions'], source=str(catalog_path))

    def _parse_version(self, version: str, body):
        if not isinstance(body, dict):
            raise CatalogError(f"Catalog version {version} must be a mapping")

        repos = {}
        for distro, releases in body.items():
            if distro == PACKAGES_KEY:
                continue
            if not isinstance(releases, dict):
                raise CatalogError(f"Catalog {version}/{distro} must map distro versions")
            repos[distro.lower()] = {}
            for distro_version, arches in releases.items():
                if not isinstance(arches, dict):
                    raise CatalogError(f"Catalog {version}/{distro}/{distro_version} must map architectures")
                entry = {}
                for arch, url in arches.items():
                    if not isinstance(url, str) or not url:
                        raise CatalogError(f"Catalog {version}/{distro}/{distro_version}/{arch}: empty URL")
                    entry[arch] = url
                repos[distro.lower()][str(distro_version)] = entry
        self._repos[version] = repos

        packages = body.get(PACKAGES_KEY, {}) or {}
        self._packages[version] = {
            kind: list(names) for kind, names in packages.items() if kind != OVERRIDES_KEY
        }
        self._overrides[version] = {
            packager: {section: list(names) for section, names in sections.items()}
            for packager, sections in (packages.get(OVERRIDES_KEY) or {}).items()
        }

    def versions(self) -> List[str]:
        return sorted(self._repos)

    def platforms(self, version: str) -> Dict[str, Dict[str, Dict[str, str]]]:
        return self._repos.get(version, {})

    def package_sections(self, version: str, packager: Optional[str] = None) -> Dict[str, List[str]]:
        """Package lists for ``version`` with the package manager's overrides applied."""
        sections = dict(self._packages.get(version, {}))
        if packager:
            sections.update(self._overrides.get(version, {}).get(packager, {}))
        return sections


def uses_generic_tree(distro: str, version: str) -> bool:
    return version in MULTIARCH_REPOS.get(distro, ())


def _check_version(catalog: Catalog, version: str):
    if version not in SUPPORTED_VERSIONS or version not in catalog.versions():
        raise UnknownVersion(version, [v for v in SUPPORTED_VERSIONS if v in catalog.versions()])


def resolve_repository(catalog: Catalog, version: str, distro: str, distro_version: str,
                       arch: str) -> RepositorySource:
    """Return the repository source for a platform or raise UnsupportedPlatform."""
    _check_version(catalog, version)
    distro = distro.lower()
    distro_version = str(distro_version)

    if arch not in ARCHITECTURES:
        raise UnsupportedPlatform(version, distro, distro_version, arch)

    entries = catalog.platforms(version).get(distro, {}).get(distro_version, {})
    candidates = (GENERIC_ARCH, arch) if uses_generic_tree(distro, version) else (arch,)
    for key in candidates:
        url = entries.get(key)
        if url:
            return RepositorySource(url, distro in UNSIGNED_REPO_DISTROS)

    raise UnsupportedPlatform(version, distro, distro_version, arch)


def select_packages(catalog: Catalog, version: str, db_kind: Optional[str] = None,
                    plugins: bool = False, webserver: Optional[str] = None,
                    packager: Optional[str] = None) -> List[str]:
    """
    Build the ordered package list for an install or upgrade.

    Order: database packages, frontend and web server packages (server only),
    SQL scripts, agent, optional plugins. Duplicates are dropped.
    """
    _check_version(catalog, version)
    sections = catalog.package_sections(version, packager)
    component = catalog.component

    selected = []
    if component == 'agent':
        if not sections.get('agent'):
            raise NoPackagesForCombination(component, version, 'agent')
    else:
        if not db_kind or not sections.get(db_kind):
            raise NoPackagesForCombination(component, version, db_kind or 'no database')
        selected += sections[db_kind]

    if component == 'server':
        selected += sections.get('frontend', [])
        if webserver:
            selected += sections.get(webserver, [])

    selected += sections.get('scripts', [])
    selected += sections.get('agent', [])
    if plugins:
        selected += sections.get('plugins', [])

    packages = []
    for name in selected:
        name = name.format(db=db_kind or '')
        if name not in packages:
            packages.append(name)
    return packages
