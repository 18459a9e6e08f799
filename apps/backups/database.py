"""
Database-side operations: readiness polling, dump, restore and management of
disposable databases.

pg_dump, pg_restore and pg_isready run either on the host (connecting over
TCP with PGPASSWORD) or inside the PostgreSQL container via ``docker exec``
when ``POSTGRES_CONTAINER`` is set. Catalog statements go through psycopg2
with parameterized queries and ``sql.Identifier`` for database names.
"""

import logging
import time
from contextlib import closing
from typing import List, Optional

import psycopg2
from psycopg2 import sql

from .conf import DatabaseParams
from .exceptions import CommandFailedError, DatabaseNotReadyError, RestoreError
from .process import run_command

logger = logging.getLogger(__name__)

MAINTENANCE_DB = "postgres"


def pg_command(database: DatabaseParams, tool: str, args: List[str], dbname: Optional[str] = None):
    """
    Build the argv and environment for a libpq client tool.

    Returns:
        Tuple of (command list, extra environment or None)
    """
    target = dbname or database.name
    if database.container:
        cmd = ["docker", "exec", "-i", database.container, tool, "-U", database.user]
        env = None
    else:
        cmd = [tool, "-h", database.host, "-p", str(database.port), "-U", database.user]
        env = database.env() or None

    cmd.extend(["-d", target])
    cmd.extend(args)
    return cmd, env


def wait_until_ready(
    database: DatabaseParams, timeout: float = 60.0, poll_interval: float = 2.0, sleep=time.sleep, clock=time.monotonic
):
    """
    Poll ``pg_isready`` until the server accepts connections.

    Raises:
        DatabaseNotReadyError: If the server is not ready within ``timeout`` seconds
    """
    cmd, env = pg_command(database, "pg_isready", [])
    deadline = clock() + timeout
    last_error = None

    while True:
        try:
            run_command(cmd, timeout=max(poll_interval, 5), env=env)
            logger.info(f"Database {database.name} is ready")
            return
        except CommandFailedError as e:
            last_error = e

        if clock() >= deadline:
            break
        sleep(poll_interval)

    raise DatabaseNotReadyError(
        f"Database {database.name} not ready after {timeout:.0f} seconds: {last_error}"
    )


def dump_database(database: DatabaseParams, output_path: str, timeout: Optional[float] = None):
    """
    Write a portable custom-format dump of the whole database to ``output_path``.

    Ownership and privilege statements are stripped so the dump restores on
    any host.

    Raises:
        CommandFailedError: If pg_dump fails or times out
    """
    cmd, env = pg_command(
        database, "pg_dump", ["-Fc", "-Z9", "--no-owner", "--no-privileges", "--verbose"]
    )
    logger.info(f"Starting pg_dump for database {database.name}")
    with open(output_path, "wb") as out:
        run_command(cmd, timeout=timeout, env=env, stdout=out)
    logger.info(f"pg_dump completed: {output_path}")


def restore_dump(
    database: DatabaseParams,
    dump_path: str,
    target_db: str,
    clean: bool = False,
    timeout: Optional[float] = None,
):
    """
    Restore a custom-format dump into ``target_db``.

    Raises:
        RestoreError: If pg_restore fails
    """
    args = ["--no-owner", "--no-privileges"]
    if clean:
        args.extend(["--clean", "--if-exists"])
    cmd, env = pg_command(database, "pg_restore", args, dbname=target_db)

    logger.info(f"Restoring {dump_path} into database {target_db}")
    try:
        with open(dump_path, "rb") as dump:
            run_command(cmd, timeout=timeout, env=env, stdin=dump)
    except CommandFailedError as e:
        raise RestoreError(f"pg_restore into {target_db} failed: {e}") from e
    logger.info(f"Restore into {target_db} completed")


def connect(database: DatabaseParams, dbname: Optional[str] = None):
    """Open an autocommit psycopg2 connection (CREATE/DROP DATABASE need one)."""
    conn = psycopg2.connect(
        dbname=dbname or MAINTENANCE_DB,
        host=database.host,
        port=database.port,
        user=database.user,
        password=database.password,
        connect_timeout=10,
    )
    conn.autocommit = True
    return conn


def create_database(database: DatabaseParams, name: str):
    with closing(connect(database)) as conn:
        with conn.cursor() as cursor:
            cursor.execute(sql.SQL("CREATE DATABASE {}").format(sql.Identifier(name)))
    logger.info(f"Created database: {name}")


def terminate_connections(database: DatabaseParams, name: str) -> int:
    """Terminate every other session connected to ``name``."""
    with closing(connect(database)) as conn:
        with conn.cursor() as cursor:
            cursor.execute(
                "SELECT pg_terminate_backend(pid) FROM pg_stat_activity "
                "WHERE datname = %s AND pid <> pg_backend_pid()",
                (name,),
            )
            terminated = cursor.rowcount
    if terminated:
        logger.info(f"Terminated {terminated} sessions on {name}")
    return terminated


def drop_database(database: DatabaseParams, name: str):
    terminate_connections(database, name)
    with closing(connect(database)) as conn:
        with conn.cursor() as cursor:
            cursor.execute(sql.SQL("DROP DATABASE IF EXISTS {}").format(sql.Identifier(name)))
    logger.info(f"Dropped database: {name}")


def list_databases(database: DatabaseParams, prefix: str) -> List[str]:
    """Names of databases starting with ``prefix``."""
    pattern = prefix.replace("\\", "\\\\").replace("_", "\\_").replace("%", "\\%") + "%"
    with closing(connect(database)) as conn:
        with conn.cursor() as cursor:
            cursor.execute(
                "SELECT datname FROM pg_database WHERE datname LIKE %s ORDER BY datname",
                (pattern,),
            )
            return [row[0] for row in cursor.fetchall()]


def count_public_tables(database: DatabaseParams, dbname: str) -> int:
    with closing(connect(database, dbname=dbname)) as conn:
        with conn.cursor() as cursor:
            cursor.execute(
                "SELECT count(*) FROM information_schema.tables "
                "WHERE table_schema = %s AND table_type = %s",
                ("public", "BASE TABLE"),
            )
            return cursor.fetchone()[0]
