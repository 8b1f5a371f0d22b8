# Standard library (Python built-in modules)
import logging
import os
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Iterator, Optional, Sequence

# External library
import psycopg2
import pymysql
from psycopg2 import sql

from secret_rotation.config import ENGINE_MYSQL, ENGINE_POSTGRES, RotationSettings, normalize_engine
from secret_rotation.errors import (
    AuthenticationError,
    DatabaseConnectionError,
    DatabaseError,
    StatementError,
)
from secret_rotation.store import CredentialRecord

logger = logging.getLogger(__name__)

DEFAULT_PORTS = {
    ENGINE_POSTGRES: 5432,
    ENGINE_MYSQL: 3306,
}
DEFAULT_POSTGRES_DATABASE = 'postgres'

# MySQL Error Codes
MYSQL_ERROR_ACCESS_DENIED = 1045
MYSQL_ERROR_ACCESS_DENIED_DB = 1044
MYSQL_ERROR_UNKNOWN_DATABASE = 1049
MYSQL_ERROR_CONNECTION_REFUSED = 2003
MYSQL_ERROR_UNKNOWN_HOST = 2005
MYSQL_ERROR_SERVER_GONE = 2006
MYSQL_ERROR_SERVER_LOST = 2013

MYSQL_AUTH_ERRORS = (MYSQL_ERROR_ACCESS_DENIED, MYSQL_ERROR_ACCESS_DENIED_DB)
MYSQL_CONNECTION_ERRORS = (
    MYSQL_ERROR_CONNECTION_REFUSED,
    MYSQL_ERROR_UNKNOWN_HOST,
    MYSQL_ERROR_SERVER_GONE,
    MYSQL_ERROR_SERVER_LOST,
)

# PostgreSQL SQLSTATE class 28: invalid authorization specification
POSTGRES_AUTH_SQLSTATES = ('28P01', '28000')
# libpq reports connect-time failures without a SQLSTATE
POSTGRES_AUTH_MESSAGES = ('password authentication failed', 'authentication failed', 'no password supplied')
POSTGRES_MISSING_DATABASE_SQLSTATE = '3D000'

PROBE_STATEMENT = 'SELECT 1'


@dataclass(frozen=True)
class ConnectionParams:
    """Where and as whom to connect."""

    engine: str
    host: str
    port: int
    username: str
    password: str = field(repr=False)
    dbname: Optional[str] = None

    @classmethod
    def from_record(cls, record: CredentialRecord, default_engine: str = ENGINE_POSTGRES) -> 'ConnectionParams':
        engine = normalize_engine(record.engine or default_engine)
        dbname = record.database_name
        if dbname is None and engine == ENGINE_POSTGRES:
            dbname = DEFAULT_POSTGRES_DATABASE
        return cls(
            engine=engine,
            host=record.host,
            port=record.port or DEFAULT_PORTS[engine],
            username=record.username,
            password=record.password,
            dbname=dbname,
        )

    @property
    def address(self) -> str:
        return f"{self.host}:{self.port}"


# ============================================================================
# Database Session
# ============================================================================
# open_session() is the only way to get a session; it commits on success,
# rolls back on error and always closes the connection.
#
# Functions:
#   - open_session(): Scoped connection as a context manager
#   - connect(): Engine-specific connect with error classification
#   - classify_connect_error(): Driver error → AuthenticationError / DatabaseConnectionError
#   - classify_statement_error(): Driver error → DatabaseConnectionError / StatementError

class DatabaseSession:
    """Administrative statements over one open connection."""

    def __init__(self, connection: Any, params: ConnectionParams):
        self.connection = connection
        self.params = params

    @property
    def engine(self) -> str:
        return self.params.engine

    def execute(self, statement: Any, args: Optional[Sequence[Any]] = None) -> None:
        """Execute one statement; driver errors become StatementError or DatabaseConnectionError."""
        try:
            with self.connection.cursor() as cur:
                cur.execute(statement, args)
        except (psycopg2.Error, pymysql.MySQLError) as e:
            raise classify_statement_error(e, self.params) from e

    def set_password(self, username: str, password: str) -> None:
        """
        Purpose:
            Change a database user's password.

        Args:
            username (str): User whose password is changed
            password (str): New password

        Raises:
            StatementError: If the database rejects the statement
            DatabaseConnectionError: If the connection drops

        Note:
            The password is always a bound parameter. PostgreSQL cannot bind an
            identifier, so the user name is quoted with psycopg2.sql.Identifier;
            MySQL binds the user name as an account string.
        """

        if self.engine == ENGINE_POSTGRES:
            statement = sql.SQL('ALTER USER {} WITH PASSWORD %s').format(sql.Identifier(username))
            self.execute(statement, (password,))
        else:
            self.execute("ALTER USER %s@'%%' IDENTIFIED BY %s", (username, password))
        logger.info(f"Password updated for database user '{username}' on {self.params.address}")

    def probe(self) -> None:
        """Run SELECT 1 to prove the connection is authenticated and usable."""
        try:
            with self.connection.cursor() as cur:
                cur.execute(PROBE_STATEMENT)
                row = cur.fetchone()
        except (psycopg2.Error, pymysql.MySQLError) as e:
            raise classify_statement_error(e, self.params) from e

        if not row or row[0] != 1:
            raise StatementError(f"Unexpected probe result from {self.params.address}: {row!r}")
        logger.info(f"Probe succeeded for user '{self.params.username}' on {self.params.address}")


@contextmanager
def open_session(params: ConnectionParams, settings: RotationSettings) -> Iterator[DatabaseSession]:
    """
    Purpose:
        Open a short-lived database session and guarantee it is closed.

    Flow Summary:
        1. Connect with the given credentials (errors are classified).
        2. Yield a DatabaseSession.
        3. Commit if the block completed, roll back if it raised.
        4. Close the connection on every path.

    Args:
        params (ConnectionParams): Engine, address and credentials
        settings (RotationSettings): Timeouts and TLS configuration

    Yields:
        DatabaseSession: Session bound to the open connection

    Raises:
        AuthenticationError: If the credentials are rejected
        DatabaseConnectionError: If the database cannot be reached
        StatementError: If a statement or the final commit fails

    Example:
        with open_session(params, settings) as session:
            session.probe()
    """

    conn = connect(params, settings)
    try:
        session = DatabaseSession(conn, params)
        try:
            yield session
        except BaseException:
            _rollback(conn, params)
            raise
        try:
            conn.commit()
        except (psycopg2.Error, pymysql.MySQLError) as e:
            raise classify_statement_error(e, params) from e
    finally:
        _close(conn, params)


def connect(params: ConnectionParams, settings: RotationSettings) -> Any:
    """
    Purpose:
        Open a driver connection for the engine in params.

    SSL/TLS Configuration:
        - DB_SSL=false: plain connection (local development only)
        - DB_CA_BUNDLE_PATH set and file exists: verify certificate and host name
          against the bundle
        - Otherwise: MySQL verifies against system CAs, PostgreSQL requires TLS

    Raises:
        AuthenticationError: If the credentials are rejected
        DatabaseConnectionError: If the database cannot be reached

    References:
        https://pymysql.readthedocs.io/en/latest/modules/connections.html
        https://www.psycopg.org/docs/module.html#psycopg2.connect
        https://docs.aws.amazon.com/AmazonRDS/latest/UserGuide/UsingWithRDS.SSL.html
    """

    ca_bundle_path = settings.ca_bundle_path
    if ca_bundle_path and not os.path.exists(ca_bundle_path):
        logger.warning(f"CA bundle {ca_bundle_path} not found, falling back to default TLS settings")
        ca_bundle_path = None

    logger.info(f"Connecting to {params.engine} at {params.address} as '{params.username}'")
    try:
        if params.engine == ENGINE_POSTGRES:
            return _connect_postgres(params, settings, ca_bundle_path)
        return _connect_mysql(params, settings, ca_bundle_path)
    except (psycopg2.Error, pymysql.MySQLError, OSError) as e:
        error = classify_connect_error(e, params)
        logger.error(f"Cannot open session on {params.address} as '{params.username}': {e}")
        raise error from e


def _connect_postgres(params: ConnectionParams, settings: RotationSettings, ca_bundle_path: Optional[str]) -> Any:
    connection_params = {
        'host': params.host,
        'port': params.port,
        'user': params.username,
        'password': params.password,
        'dbname': params.dbname,
        'connect_timeout': settings.connection_timeout,
    }
    if not settings.ssl_enabled:
        connection_params['sslmode'] = 'disable'
    elif ca_bundle_path:
        connection_params['sslmode'] = 'verify-full'
        connection_params['sslrootcert'] = ca_bundle_path
    else:
        connection_params['sslmode'] = 'require'
    return psycopg2.connect(**connection_params)


def _connect_mysql(params: ConnectionParams, settings: RotationSettings, ca_bundle_path: Optional[str]) -> Any:
    connection_params = {
        'host': params.host,
        'port': params.port,
        'user': params.username,
        'password': params.password,
        'connect_timeout': settings.connection_timeout,
        'read_timeout': settings.connection_timeout,
        'write_timeout': settings.connection_timeout,
    }
    if params.dbname:
        connection_params['database'] = params.dbname
    if settings.ssl_enabled:
        connection_params.update({
            'ssl_disabled': False,
            'ssl_verify_cert': True,
            'ssl_verify_identity': True
        })
        if ca_bundle_path:
            connection_params['ssl_ca'] = ca_bundle_path
    else:
        connection_params['ssl_disabled'] = True
    return pymysql.connect(**connection_params)


def classify_connect_error(error: Exception, params: ConnectionParams) -> DatabaseError:
    """Map a connect-time failure to AuthenticationError or DatabaseConnectionError.

    An unknown database becomes a plain, non-transient DatabaseError.
    """
    if isinstance(error, pymysql.MySQLError):
        code = error.args[0] if error.args else None
        if code in MYSQL_AUTH_ERRORS:
            return AuthenticationError(f"Access denied for '{params.username}' on {params.address}: {error}")
        if code == MYSQL_ERROR_UNKNOWN_DATABASE:
            return _missing_database(error, params)
        return DatabaseConnectionError(f"Cannot connect to {params.address}: {error}")

    if isinstance(error, psycopg2.Error):
        message = str(error).lower()
        if error.pgcode in POSTGRES_AUTH_SQLSTATES or any(text in message for text in POSTGRES_AUTH_MESSAGES):
            return AuthenticationError(f"Access denied for '{params.username}' on {params.address}: {error}")
        if error.pgcode == POSTGRES_MISSING_DATABASE_SQLSTATE or ('database "' in message and 'does not exist' in message):
            return _missing_database(error, params)
        return DatabaseConnectionError(f"Cannot connect to {params.address}: {error}")

    return DatabaseConnectionError(f"Cannot connect to {params.address}: {error}")


def _missing_database(error: Exception, params: ConnectionParams) -> DatabaseError:
    # Not transient: the configured database name is wrong
    return DatabaseError(f"Database {params.dbname!r} does not exist on {params.address}: {error}")


def classify_statement_error(error: Exception, params: ConnectionParams) -> DatabaseError:
    """Map a failure after connecting to DatabaseConnectionError or StatementError."""
    if isinstance(error, pymysql.err.OperationalError):
        code = error.args[0] if error.args else None
        if code in MYSQL_CONNECTION_ERRORS:
            return DatabaseConnectionError(f"Lost connection to {params.address}: {error}")
    elif isinstance(error, (psycopg2.OperationalError, psycopg2.InterfaceError)):
        return DatabaseConnectionError(f"Lost connection to {params.address}: {error}")
    return StatementError(f"Statement failed on {params.address}: {error}")


def _rollback(conn: Any, params: ConnectionParams) -> None:
    # The exception already propagating is what the caller needs; a failed rollback is only logged
    try:
        conn.rollback()
    except (psycopg2.Error, pymysql.MySQLError) as e:
        logger.warning(f"Rollback failed on {params.address}: {e}")


def _close(conn: Any, params: ConnectionParams) -> None:
    try:
        conn.close()
    except (psycopg2.Error, pymysql.MySQLError) as e:
        logger.warning(f"Closing connection to {params.address} failed: {e}")
