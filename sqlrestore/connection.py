"""
Target server connections.

Two clients are supported, as elsewhere in this project: pyodbc (ODBC driver,
SQL or Azure AD authentication) and pytds (pure Python TDS). Both are wrapped
in an engine object exposing run_batches(); driver exceptions are translated
into EngineError, EngineTimeoutError or ConnectionLostError so the executor
never sees driver specific types.
"""

import logging
import re
from typing import Dict, List, Optional, Tuple

import certifi
import pyodbc
import pytds

from .errors import ConfigError, ConnectionLostError, EngineError, EngineTimeoutError

logger = logging.getLogger(__name__)


# ODBC SQLSTATEs meaning the link to the server is gone
CONNECTION_LOST_SQLSTATES = {'08S01', '08S02', '08003', '08007'}
TIMEOUT_SQLSTATES = {'HYT00', 'HYT01'}


def extract_error_number(e: Exception) -> Optional[int]:
    """SQL Server error number from a driver exception, if it carries one."""
    for attr in ('number', 'msg_no'):
        value = getattr(e, attr, None)
        if isinstance(value, int) and not isinstance(value, bool):
            return value
    # e.args can be (msg) or (msg, code)
    if len(e.args) >= 2 and isinstance(e.args[1], int):
        return e.args[1]
    # pyodbc messages look like '... Invalid object name 'dbo.X'. (208) (SQLExecDirectW)'
    text = str(e)
    m = re.search(r'\((\d+)\)\s*\(SQL\w+\)', text) or re.search(r'\((\d{4,5})\)', text)
    if m:
        return int(m.group(1))
    return None


def build_connection_string(config: Dict) -> str:
    try:
        server = config['server']
        database = config['database']
        driver = config.get('driver', 'ODBC Driver 18 for SQL Server')
        if config.get('authentication_type', 'sql') == 'azure_ad':
            # Azure AD authentication
            return (
                f"DRIVER={{{driver}}};"
                f"SERVER={server};"
                f"DATABASE={database};"
                f"Authentication=ActiveDirectoryDefault;"
                f"TrustServerCertificate=yes;"
            )
        # SQL Server authentication
        username = config.get('username') or config.get('user') or config.get('uid')
        password = config.get('password') or config.get('pwd')
        if not username or not password:
            raise ConfigError('Missing username/password for SQL authentication in config')
        return (
            f"DRIVER={{{driver}}};"
            f"SERVER={server};"
            f"DATABASE={database};"
            f"UID={username};"
            f"PWD={password};"
            f"TrustServerCertificate=yes;"
        )
    except KeyError as e:
        raise ConfigError(f"Missing connection setting: {e.args[0]}")


def build_tds_params(config: Dict, timeout: int = 0) -> Dict:
    try:
        server = config['server']
        database = config['database']
    except KeyError as e:
        raise ConfigError(f"Missing connection setting: {e.args[0]}")
    username = config.get('username') or config.get('user') or config.get('uid')
    password = config.get('password') or config.get('pwd')
    if not username or not password:
        raise ConfigError('Missing username/password for SQL authentication in config')
    params = {
        'server': server,
        'database': database,
        'user': str(username),
        'password': str(password),
        'port': int(config.get('port', 1433)),
        'cafile': certifi.where(),
        'validate_host': False,
        'autocommit': False,
    }
    if config.get('tds_version'):
        params['tds_version'] = config['tds_version']
    if timeout:
        params['timeout'] = timeout
    return params


class OdbcEngine:
    """Executes scripts over a pyodbc connection."""

    def __init__(self, connection, transactional: bool = True):
        self.connection = connection
        self.transactional = transactional

    @classmethod
    def connect(cls, config: Dict, timeout: int = 0, transactional: bool = True) -> 'OdbcEngine':
        try:
            connection = pyodbc.connect(build_connection_string(config), autocommit=not transactional)
        except pyodbc.Error as e:
            raise ConnectionLostError(f"Failed to connect to database: {e}")
        # Query timeout in seconds, 0 disables it
        connection.timeout = timeout
        logger.info(f"Successfully connected to {config.get('server')}/{config.get('database')} (pyodbc)")
        return cls(connection, transactional)

    def run_batches(self, batches: List[Tuple[str, int]]):
        cursor = self.connection.cursor()
        try:
            for sql, count in batches:
                for _ in range(count):
                    cursor.execute(sql)
                    # Errors raised by later statements of a batch surface while draining results
                    while cursor.nextset():
                        pass
            if self.transactional:
                self.connection.commit()
        except pyodbc.Error as e:
            error = translate_odbc_error(e)
            if not isinstance(error, ConnectionLostError):
                self._rollback()
            raise error
        finally:
            try:
                cursor.close()
            except pyodbc.Error as e:
                logger.debug(f"Error closing cursor: {e}")

    def _rollback(self):
        if not self.transactional:
            return
        try:
            self.connection.rollback()
        except pyodbc.Error as e:
            logger.warning(f"Rollback failed: {e}")

    def close(self):
        if self.connection:
            self.connection.close()
            self.connection = None
            logger.info("Database connection closed")


def translate_odbc_error(e: pyodbc.Error) -> Exception:
    sqlstate = e.args[0] if e.args and isinstance(e.args[0], str) else None
    message = str(e.args[1]) if len(e.args) >= 2 else str(e)
    if sqlstate in CONNECTION_LOST_SQLSTATES:
        return ConnectionLostError(message)
    number = extract_error_number(e)
    if sqlstate in TIMEOUT_SQLSTATES or 'timeout expired' in message.lower():
        return EngineTimeoutError(message, number, sqlstate)
    return EngineError(message, number, sqlstate)


class TdsEngine:
    """Executes scripts over a pytds connection."""

    def __init__(self, connection, transactional: bool = True):
        self.connection = connection
        self.transactional = transactional

    @classmethod
    def connect(cls, config: Dict, timeout: int = 0, transactional: bool = True) -> 'TdsEngine':
        params = build_tds_params(config, timeout)
        params['autocommit'] = not transactional
        try:
            connection = pytds.connect(**params)
        except (pytds.Error, OSError) as e:
            raise ConnectionLostError(f"Failed to connect to database: {e}")
        logger.info(f"Successfully connected to {config.get('server')}/{config.get('database')} (pytds)")
        return cls(connection, transactional)

    def run_batches(self, batches: List[Tuple[str, int]]):
        cursor = self.connection.cursor()
        try:
            for sql, count in batches:
                for _ in range(count):
                    cursor.execute(sql)
                    while cursor.nextset():
                        pass
            if self.transactional:
                self.connection.commit()
        except (pytds.Error, OSError) as e:
            error = translate_tds_error(e)
            if not isinstance(error, ConnectionLostError) and self.transactional:
                try:
                    self.connection.rollback()
                except (pytds.Error, OSError) as rollback_error:
                    logger.warning(f"Rollback failed: {rollback_error}")
            raise error
        finally:
            try:
                cursor.close()
            except (pytds.Error, OSError) as e:
                logger.debug(f"Error closing cursor: {e}")

    def close(self):
        if self.connection:
            self.connection.close()
            self.connection = None
            logger.info("Database connection closed")


def translate_tds_error(e: Exception) -> Exception:
    message = str(e)
    if isinstance(e, TimeoutError) or type(e).__name__ == 'TimeoutError' or 'timeout' in message.lower():
        return EngineTimeoutError(message, extract_error_number(e))
    if isinstance(e, (OSError, pytds.InterfaceError)):
        return ConnectionLostError(message)
    return EngineError(message, extract_error_number(e))


def open_engine(options):
    """Connect to the target server described by the import options."""
    config = options.connection
    client = str(config.get('client', 'pyodbc')).lower()
    if client == 'pyodbc':
        return OdbcEngine.connect(config, options.script_timeout, options.transactional_scripts)
    if client == 'pytds':
        return TdsEngine.connect(config, options.script_timeout, options.transactional_scripts)
    raise ConfigError(f"Unknown client: {client} (expected pyodbc or pytds)")
