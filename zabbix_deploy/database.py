"""
Database bootstrap for the Zabbix server and proxy.

MySQL statements go through pymysql as root over the local unix socket. The
schema itself is streamed into the ``mysql`` client because the shipped SQL
uses client-side ``DELIMITER`` blocks. PostgreSQL is driven through ``psql``
run as the ``postgres`` system user.
"""

import gzip
import logging
import os
from contextlib import contextmanager
from pathlib import Path
from typing import Optional

import pymysql
from pymysql.constants import CLIENT

from .errors import CommandError, DatabaseError
from .settings import SQLITE_DB_PATH
from .shell import run_command

logger = logging.getLogger('zabbix_deploy')

SCHEMA_DIR = '/usr/share/zabbix-sql-scripts'
SCHEMA_FILES = {
    ('server', 'mysql'): 'mysql/server.sql.gz',
    ('server', 'pgsql'): 'postgresql/server.sql.gz',
    ('proxy', 'mysql'): 'mysql/proxy.sql',
    ('proxy', 'pgsql'): 'postgresql/proxy.sql',
}

MYSQL_SOCKETS = (
    '/var/run/mysqld/mysqld.sock',
    '/run/mysqld/mysqld.sock',
    '/var/lib/mysql/mysql.sock',
)
DEBIAN_MAINTENANCE_CNF = '/etc/mysql/debian.cnf'


def schema_path(component: str, db_kind: str, schema_dir: str = SCHEMA_DIR) -> Path:
    return Path(schema_dir) / SCHEMA_FILES[(component, db_kind)]


def read_schema(path) -> bytes:
    path = Path(path)
    if not path.exists():
        raise DatabaseError('schema-import', f"Schema file not found: {path}")
    opener = gzip.open if path.suffix == '.gz' else open
    with opener(path, 'rb') as f:
        return f.read()


def _find_socket() -> Optional[str]:
    for candidate in MYSQL_SOCKETS:
        if os.path.exists(candidate):
            return candidate
    return None


class MySQLDatabase:
    kind = 'mysql'

    def __init__(self, name, user, password, host='localhost', runner=run_command):
        self.name = name
        self.user = user
        self.password = password
        self.host = host
        self.run = runner

    @contextmanager
    def connect_root(self, step):
        """Root connection over the unix socket; failures are reported as ``step``."""
        connect_args = {
            'user': 'root',
            'autocommit': True,
            'client_flag': CLIENT.MULTI_STATEMENTS,
        }
        socket_path = _find_socket()
        if socket_path:
            connect_args['unix_socket'] = socket_path
        else:
            connect_args['host'] = 'localhost'

        try:
            conn = pymysql.connect(**connect_args)
        except pymysql.MySQLError as e:
            logger.error(f"Database connection failed: {e}")
            raise DatabaseError(step, f"Failed to connect to MySQL as root: {e}")
        try:
            yield conn
        finally:
            if conn.open:
                conn.close()

    def _execute(self, conn, step, query, params=None):
        try:
            with conn.cursor() as cursor:
                cursor.execute(query, params)
        except pymysql.MySQLError as e:
            logger.error(f"SQL Error: {e}")
            raise DatabaseError(step, str(e))

    def bootstrap(self, schema_file):
        logger.info(f"Creating MySQL database {self.name} and user {self.user}...")
        with self.connect_root('create-db') as conn:
            self._execute(conn, 'create-db',
                          f"CREATE DATABASE IF NOT EXISTS `{self.name}` CHARACTER SET utf8mb4 COLLATE utf8mb4_bin")
            self._execute(conn, 'create-user', "CREATE USER IF NOT EXISTS %s@%s IDENTIFIED BY %s",
                          (self.user, 'localhost', self.password))
            self._execute(conn, 'grant', f"GRANT ALL PRIVILEGES ON `{self.name}`.* TO %s@%s",
                          (self.user, 'localhost'))

            # Needed for the triggers in the schema when binary logging is on
            self._execute(conn, 'schema-import', "SET GLOBAL log_bin_trust_function_creators = 1")
            try:
                self.import_schema(schema_file)
            finally:
                self._execute(conn, 'schema-import', "SET GLOBAL log_bin_trust_function_creators = 0")
        logger.info("Database setup completed")

    def import_schema(self, schema_file):
        logger.info(f"Importing initial schema from {schema_file}...")
        command = ['mysql', '--default-character-set=utf8mb4', '-u', self.user]
        if self.host not in ('localhost', '127.0.0.1'):
            command += ['-h', self.host]
        try:
            self.run(command + [self.name], input=read_schema(schema_file), env={'MYSQL_PWD': self.password})
        except CommandError as e:
            raise DatabaseError('schema-import', e.stderr or str(e))

    def dump(self, target_dir) -> Optional[Path]:
        """Best effort dump; returns None on failure."""
        target = Path(target_dir) / f"{self.name}_db.sql"
        attempts = [(['mysqldump', '-uroot', self.name], None)]
        if os.path.exists(DEBIAN_MAINTENANCE_CNF):
            attempts.append((['mysqldump', f"--defaults-file={DEBIAN_MAINTENANCE_CNF}", self.name], None))
        if self.password:
            attempts.append((['mysqldump', '-u', self.user, self.name], {'MYSQL_PWD': self.password}))

        for command, env in attempts:
            try:
                result = self.run(command, env=env)
            except CommandError as e:
                logger.warning(f"mysqldump attempt failed: {e}")
                continue
            with open(target, 'w') as f:
                f.write(result.stdout)
            logger.info(f"Database backup saved to {target}")
            return target
        logger.warning("Database backup failed, continuing")
        return None

    def drop(self):
        try:
            with self.connect_root('drop') as conn:
                with conn.cursor() as cursor:
                    cursor.execute(f"DROP DATABASE IF EXISTS `{self.name}`")
                    cursor.execute("DROP USER IF EXISTS %s@%s", (self.user, 'localhost'))
        except (DatabaseError, pymysql.MySQLError) as e:
            logger.warning(f"Failed to drop database: {e}")
            return False
        logger.info(f"Dropped database {self.name} and user {self.user}")
        return True


def _pg_literal(value: str) -> str:
    return "'" + str(value).replace("'", "''") + "'"


class PostgreSQLDatabase:
    kind = 'pgsql'

    def __init__(self, name, user, password, host='localhost', runner=run_command):
        self.name = name
        self.user = user
        self.password = password
        self.host = host
        self.run = runner

    def psql(self, step, sql, description=None):
        """Run SQL as the postgres superuser. Statements go through stdin so secrets stay off the command line."""
        logger.info(description or sql)
        try:
            return self.run(['sudo', '-u', 'postgres', 'psql', '-v', 'ON_ERROR_STOP=1', '-q'], input=sql)
        except CommandError as e:
            raise DatabaseError(step, e.stderr or str(e))

    def bootstrap(self, schema_file):
        logger.info(f"Creating PostgreSQL database {self.name} and user {self.user}...")
        self.psql('create-db', f'CREATE DATABASE "{self.name}";')
        self.psql('create-user', f'CREATE USER "{self.user}" WITH PASSWORD {_pg_literal(self.password)};',
                  description=f'CREATE USER "{self.user}" WITH PASSWORD \'********\';')
        self.psql('grant', f'GRANT ALL PRIVILEGES ON DATABASE "{self.name}" TO "{self.user}";\n'
                           f'ALTER DATABASE "{self.name}" OWNER TO "{self.user}";')
        self.import_schema(schema_file)
        logger.info("Database setup completed")

    def import_schema(self, schema_file):
        logger.info(f"Importing initial schema from {schema_file}...")
        try:
            self.run(['sudo', '-u', self.user, 'psql', '-q', self.name], input=read_schema(schema_file))
        except CommandError as e:
            raise DatabaseError('schema-import', e.stderr or str(e))

    def dump(self, target_dir) -> Optional[Path]:
        target = Path(target_dir) / f"{self.name}_db.sql"
        try:
            result = self.run(['sudo', '-u', 'postgres', 'pg_dump', self.name])
        except CommandError as e:
            logger.warning(f"Database backup failed, continuing: {e}")
            return None
        with open(target, 'w') as f:
            f.write(result.stdout)
        logger.info(f"Database backup saved to {target}")
        return target

    def drop(self):
        try:
            self.psql('drop', f'DROP DATABASE IF EXISTS "{self.name}";\nDROP USER IF EXISTS "{self.user}";')
        except DatabaseError as e:
            logger.warning(f"Failed to drop database: {e}")
            return False
        logger.info(f"Dropped database {self.name} and user {self.user}")
        return True


class SQLiteDatabase:
    """The proxy creates the SQLite file itself; only its directory is prepared."""

    kind = 'sqlite'

    def __init__(self, path=SQLITE_DB_PATH, owner='zabbix', runner=run_command):
        self.path = Path(path)
        self.owner = owner
        self.run = runner

    def bootstrap(self, schema_file=None):
        directory = self.path.parent
        logger.info(f"Preparing SQLite directory {directory}")
        try:
            directory.mkdir(parents=True, exist_ok=True)
            self.run(['chown', '-R', f"{self.owner}:{self.owner}", str(directory)])
        except (OSError, CommandError) as e:
            raise DatabaseError('create-db', str(e))

    def dump(self, target_dir):
        return None

    def drop(self):
        if self.path.exists():
            self.path.unlink()
            logger.info(f"Removed {self.path}")
        return True


def database_for(db_kind, name, user, password, host='localhost', runner=run_command):
    if db_kind == 'mysql':
        return MySQLDatabase(name, user, password, host, runner)
    if db_kind == 'pgsql':
        return PostgreSQLDatabase(name, user, password, host, runner)
    if db_kind == 'sqlite':
        return SQLiteDatabase(name, runner=runner)
    raise DatabaseError('create-db', f"Unsupported database type: {db_kind}")


def detect_database_kind(systemd) -> Optional[str]:
    """Guess the local database engine from its systemd units."""
    if systemd.unit_exists('mysql') or systemd.unit_exists('mariadb'):
        return 'mysql'
    if systemd.unit_exists('postgresql'):
        return 'pgsql'
    return None


def install_database_server(db_kind, package_manager, systemd, runner=run_command):
    """Install and start a local MySQL/MariaDB or PostgreSQL server if none is present."""
    if db_kind not in ('mysql', 'pgsql'):
        return
    if detect_database_kind(systemd) == db_kind:
        logger.info(f"Database server for {db_kind} already installed")
        return

    family = package_manager.family
    logger.info(f"Installing database server for {db_kind}...")
    if db_kind == 'mysql':
        if family == 'apt':
            try:
                package_manager.install(['mysql-server'])
                unit = 'mysql'
            except CommandError:
                logger.warning("mysql-server installation failed, trying mariadb-server...")
                package_manager.install(['mariadb-server'])
                unit = 'mariadb'
        elif family == 'zypper':
            package_manager.install(['mariadb', 'mariadb-server'])
            unit = 'mariadb'
        else:
            package_manager.install(['mariadb-server'])
            unit = 'mariadb'
    else:
        unit = 'postgresql'
        if family == 'apt':
            package_manager.install(['postgresql', 'postgresql-contrib'])
        elif family == 'zypper':
            package_manager.install(['postgresql', 'postgresql-server'])
        else:
            package_manager.install(['postgresql-server'])
            runner(['postgresql-setup', '--initdb'])

    systemd.enable(unit)
    systemd.start(unit)
