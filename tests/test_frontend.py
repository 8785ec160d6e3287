"""
Tests for web server handling of the frontend.
"""

from pathlib import Path

import pytest

from zabbix_deploy import frontend
from zabbix_deploy.shell import Apt, Dnf, Systemd


APACHE_CONF = '''\
Alias /zabbix /usr/share/zabbix

<Directory "/usr/share/zabbix">
    Options FollowSymLinks
</Directory>
'''


class TestRewriteFrontendPaths:
    def test_rewrites_and_keeps_copy(self, tmp_path: Path):
        conf = tmp_path / 'zabbix.conf'
        conf.write_text(APACHE_CONF)

        assert frontend.rewrite_frontend_paths(conf)

        text = conf.read_text()
        assert 'Alias /zabbix /usr/share/zabbix/ui\n' in text
        assert '<Directory "/usr/share/zabbix/ui">' in text
        copies = list(tmp_path.glob('zabbix.conf.bak-*'))
        assert len(copies) == 1
        assert copies[0].read_text() == APACHE_CONF

    def test_second_pass_is_a_no_op(self, tmp_path: Path):
        conf = tmp_path / 'zabbix.conf'
        conf.write_text(APACHE_CONF)
        frontend.rewrite_frontend_paths(conf)
        once = conf.read_text()

        assert not frontend.rewrite_frontend_paths(conf)
        assert conf.read_text() == once

    def test_missing_file(self, tmp_path: Path):
        assert not frontend.rewrite_frontend_paths(tmp_path / 'zabbix.conf')


@pytest.mark.parametrize('version, expected', [
    ('6.0', False),
    ('7.0', False),
    ('7.2', True),
    ('7.4', True),
])
def test_needs_ui_root(version, expected):
    assert frontend.needs_ui_root(version) is expected


def test_web_config_path():
    assert str(frontend.web_config_path('apache', 'apt')) == '/etc/apache2/conf-available/zabbix.conf'
    assert str(frontend.web_config_path('apache', 'dnf')) == '/etc/httpd/conf.d/zabbix.conf'
    assert str(frontend.web_config_path('apache', 'zypper')) == '/etc/apache2/conf.d/zabbix.conf'
    assert str(frontend.web_config_path('nginx', 'dnf')) == '/etc/nginx/conf.d/zabbix.conf'


class TestWebServer:
    def test_units(self, runner):
        runner.on('systemctl', 'list-unit-files', 'php8.1-fpm.service', stdout='php8.1-fpm.service enabled')
        systemd = Systemd(runner)
        assert frontend.web_units('nginx', 'apt', systemd) == ['nginx', 'php8.1-fpm']
        assert frontend.web_units('apache', 'apt', systemd) == ['apache2']
        assert frontend.web_units('apache', 'dnf', systemd) == ['httpd', 'php-fpm']
        assert frontend.web_units('nginx', 'zypper', systemd) == ['nginx', 'php-fpm']

    def test_install_on_apt(self, runner):
        frontend.install_web_server('nginx', Apt(runner), Systemd(runner))
        assert runner.commands[-1] == ['apt-get', 'install', '-y', 'nginx', 'php-fpm']

    def test_packages_pull_web_server_elsewhere(self, runner):
        frontend.install_web_server('apache', Dnf(runner), Systemd(runner))
        assert runner.commands == []
