"""
Tests for host detection from os-release.
"""

import textwrap
from pathlib import Path

import pytest

from zabbix_deploy import system
from zabbix_deploy.errors import ValidationError


def write_os_release(tmp_path: Path, content: str) -> Path:
    path = tmp_path / 'os-release'
    path.write_text(textwrap.dedent(content))
    return path


class TestDetectPlatform:
    def test_ubuntu(self, tmp_path: Path):
        path = write_os_release(tmp_path, """\
            PRETTY_NAME="Ubuntu 22.04.4 LTS"
            NAME="Ubuntu"
            VERSION_ID="22.04"
            ID=ubuntu
            ID_LIKE=debian
        """)
        info = system.detect_platform(str(path), machine='x86_64')
        assert (info.distro, info.distro_version, info.arch) == ('ubuntu', '22.04', 'amd64')
        assert info.pretty_name == 'Ubuntu 22.04.4 LTS'
        assert info.packager == 'apt'

    def test_rhel_family_uses_major_version(self, tmp_path: Path):
        path = write_os_release(tmp_path, """\
            NAME="AlmaLinux"
            VERSION_ID="9.3"
            ID="almalinux"
            PRETTY_NAME="AlmaLinux 9.3 (Shamrock Pampas Cat)"
        """)
        info = system.detect_platform(str(path), machine='aarch64')
        assert (info.distro, info.distro_version, info.arch) == ('alma', '9', 'arm64')

    def test_amazon_linux(self, tmp_path: Path):
        path = write_os_release(tmp_path, """\
            ID="amzn"
            VERSION_ID="2023"
        """)
        info = system.detect_platform(str(path), machine='x86_64')
        assert (info.distro, info.distro_version) == ('amazonlinux', '2023')
        assert info.pretty_name == 'amazonlinux 2023'

    def test_sles_service_pack(self, tmp_path: Path):
        path = write_os_release(tmp_path, """\
            ID="sles"
            VERSION_ID="15.5"
        """)
        info = system.detect_platform(str(path), machine='x86_64')
        assert (info.distro, info.distro_version, info.packager) == ('sles', '15', 'zypper')

    def test_missing_file(self, tmp_path: Path):
        with pytest.raises(ValidationError, match='Cannot detect OS'):
            system.detect_platform(str(tmp_path / 'os-release'))

    def test_missing_id(self, tmp_path: Path):
        path = write_os_release(tmp_path, 'NAME="Mystery"\n')
        with pytest.raises(ValidationError):
            system.detect_platform(str(path), machine='x86_64')

    def test_unsupported_arch(self, tmp_path: Path):
        path = write_os_release(tmp_path, 'ID=ubuntu\nVERSION_ID="22.04"\n')
        with pytest.raises(ValidationError, match='Unsupported architecture'):
            system.detect_platform(str(path), machine='riscv64')


class TestRequireRoot:
    def test_non_root(self, monkeypatch):
        monkeypatch.setattr(system.os, 'geteuid', lambda: 1000)
        with pytest.raises(ValidationError, match='root'):
            system.require_root()

    def test_root(self, monkeypatch):
        monkeypatch.setattr(system.os, 'geteuid', lambda: 0)
        system.require_root()
