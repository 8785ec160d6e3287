"""Install, upgrade and uninstall Zabbix server, proxy and agent."""

VERSION = '1.0.0'
