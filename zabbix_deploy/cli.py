"""Command line entry points."""

import argparse
import getpass
import logging
import logging.handlers
import sys

from . import VERSION
from .catalog import COMPONENTS, DATABASE_KINDS, SUPPORTED_VERSIONS, Catalog
from .deployer import PROXY_MODES, deployer_for
from .errors import ValidationError
from .settings import DeployContext, load_settings
from .system import detect_hostname, detect_ip, detect_platform, log_system_metadata, require_root

ACTIONS = ('install', 'upgrade', 'uninstall', 'status')
WEBSERVERS = ('apache', 'nginx')

EPILOG = '''
Examples:
  # Server with MySQL and Apache, default database password
  %(prog)s{component} --action install --version 7.4 --db mysql --webserver apache --default

  # Proxy with SQLite, no prompts
  %(prog)s{component} --action install --version 7.4 --db sqlite --server-ip 192.168.1.100 --yes

  # Agent pointing at a server
  %(prog)s{component} --action install --version 7.0 --server-ip 192.168.1.100 --plugins

  # Upgrade, keeping every value from the current configuration file
  %(prog)s{component} --action upgrade --version 7.4 --db mysql --webserver nginx

  # Remove packages and drop the database
  %(prog)s{component} --action uninstall --purge-db --yes

  # Installed version, packages, repository files and the repository candidate
  %(prog)s{component} --action status --db mysql
'''


class ArgumentParser(argparse.ArgumentParser):
    """argparse exits 2 on usage errors; this tool exits 1 on any failure."""

    def error(self, message):
        self.print_usage(sys.stderr)
        self.exit(1, f"{self.prog}: error: {message}\n")


def build_parser(component=None):
    prog = f"zabbix-{component}-deploy" if component else 'zabbix-deploy'
    parser = ArgumentParser(
        prog=prog,
        description=f"Install, upgrade or uninstall Zabbix {component or 'components'} ({VERSION})",
        epilog=EPILOG.format(component='' if component else ' --component <server|proxy|agent>'),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    if component is None:
        parser.add_argument('--component', choices=COMPONENTS, required=True, help='Component to manage')
    parser.add_argument('--action', choices=ACTIONS, help='Action to perform')
    parser.add_argument('--version', choices=SUPPORTED_VERSIONS, help='Zabbix version')
    parser.add_argument('--db', choices=('mysql', 'pgsql', 'sqlite'), help='Database type')
    parser.add_argument('--server-ip', help='Zabbix server address (proxy and agent)')
    parser.add_argument('--webserver', choices=WEBSERVERS, help='Web server for the frontend (server)')
    parser.add_argument('--hostname', help='Hostname to register (default: detected FQDN)')
    parser.add_argument('--plugins', action='store_true', help='Install the agent 2 plugins')
    parser.add_argument('--proxy-mode', choices=sorted(PROXY_MODES), default='0',
                        help='Proxy mode: 0 active, 1 passive')

    password = parser.add_mutually_exclusive_group()
    password.add_argument('--default', action='store_true', help='Use the default database password')
    password.add_argument('--manual', action='store_true', help='Prompt for the database password')

    parser.add_argument('--yes', '-y', action='store_true', help='Do not ask for confirmation')
    parser.add_argument('--purge-db', action='store_true', help='Drop the database and user on uninstall')
    parser.add_argument('--config', '-c', help='Path to the settings file')
    parser.add_argument('--catalog', help='Path to a repository catalog JSON file')
    parser.add_argument('--verbose', '-vv', action='store_true', help='Enable debug logging')
    return parser


def validate_args(args, component):
    if not args.action:
        raise ValidationError("--action is required")
    if args.action in ('install', 'upgrade') and not args.version:
        raise ValidationError("--version is required")

    if args.action in ('install', 'upgrade'):
        allowed = DATABASE_KINDS[component]
        if allowed and args.db not in allowed:
            raise ValidationError(f"--db is required for the {component}; allowed: {', '.join(allowed)}")
        if component == 'server' and not args.webserver:
            raise ValidationError("--webserver is required for the server")

    if args.action == 'install':
        if component in ('proxy', 'agent') and not args.server_ip:
            raise ValidationError(f"--server-ip is required to install the {component}")
        if args.db in ('mysql', 'pgsql') and not (args.default or args.manual):
            raise ValidationError("Choose --default or --manual for the database password")

    if args.manual and args.yes:
        raise ValidationError("--manual cannot be combined with --yes")


def resolve_password(args, default_password, prompt=getpass.getpass):
    """Database password from the flags; the core never prompts."""
    if args.db not in ('mysql', 'pgsql'):
        return None
    if args.manual:
        password = prompt("Enter database password: ")
        if not password:
            raise ValidationError("Database password cannot be empty")
        if prompt("Confirm database password: ") != password:
            raise ValidationError("Passwords do not match")
        return password
    if args.default:
        return default_password
    return None


def ask_confirmation(question):
    answer = input(f"{question} (y/n): ").strip().lower()
    return answer in ('y', 'yes')


def setup_logging(config_log_type, log_file, verbose=False):
    logger = logging.getLogger('zabbix_deploy')
    logger.setLevel(logging.DEBUG if verbose else logging.INFO)
    logger.handlers.clear()

    formatter = logging.Formatter('%(asctime)s - %(levelname)s - %(message)s')

    if config_log_type == 'syslog':
        handler = logging.handlers.SysLogHandler(address='/dev/log')
        handler.setFormatter(logging.Formatter('%(name)s: %(message)s'))
        logger.addHandler(handler)
        return logger

    handlers = [logging.StreamHandler(sys.stdout)]
    file_error = None
    try:
        handlers.append(logging.FileHandler(log_file))
    except OSError as e:
        file_error = e
    for handler in handlers:
        handler.setFormatter(formatter)
        logger.addHandler(handler)
    if file_error:
        logger.warning(f"Cannot write log file {log_file}: {file_error}")
    return logger


def main(argv=None, component=None):
    parser = build_parser(component)
    args = parser.parse_args(argv)
    component = component or args.component

    try:
        validate_args(args, component)
        if args.action != 'status':
            require_root()

        settings = load_settings(args.config)
        logger = setup_logging(settings.logging, settings.log_file_for(component), verbose=args.verbose)
        logger.info(f"zabbix-deploy {VERSION}: {args.action} {component} {args.version or ''}".rstrip())

        platform_info = detect_platform()
        hostname = args.hostname or detect_hostname()
        ip_address = detect_ip()
        log_system_metadata(platform_info, hostname, ip_address)

        ctx = DeployContext(
            component=component,
            action=args.action,
            version=args.version,
            platform=platform_info,
            hostname=hostname,
            ip_address=ip_address,
            server_ip=args.server_ip,
            db_kind=args.db,
            webserver=args.webserver,
            plugins=args.plugins,
            proxy_mode=args.proxy_mode,
            db_password=resolve_password(args, settings.default_db_password),
            auto_confirm=args.yes,
            purge_db=args.purge_db,
            settings=settings,
        )

        catalog = Catalog.load(component, args.catalog or settings.catalog_path(component))
        deployer = deployer_for(ctx, catalog=catalog, confirm=None if args.yes else ask_confirmation)
        deployer.execute()
        return 0

    except Exception as e:
        logging.getLogger('zabbix_deploy').critical(f"Deployment failed: {e}")
        print(f"Critical Error: {e}", file=sys.stderr)
        return 1


def server_main(argv=None):
    return main(argv, component='server')


def proxy_main(argv=None):
    return main(argv, component='proxy')


def agent_main(argv=None):
    return main(argv, component='agent')


if __name__ == '__main__':
    sys.exit(main())
