# Overview: Flask extension instance for the database and SQLite connection setup.

import sqlite3

from flask_sqlalchemy import SQLAlchemy
from sqlalchemy import event
from sqlalchemy.engine import Engine

db = SQLAlchemy()


def sqlite_engine_options(app) -> dict:
    """
    Engine options for one app.

    The busy timeout goes to the driver through connect_args, so every store
    keeps its own value.
    """
    options = dict(app.config.get("SQLALCHEMY_ENGINE_OPTIONS") or {})
    connect_args = dict(options.get("connect_args") or {})
    connect_args.setdefault("timeout", app.config["SQLITE_BUSY_TIMEOUT_MS"] / 1000)
    options["connect_args"] = connect_args
    return options


@event.listens_for(Engine, "connect")
def _configure_sqlite_connection(dbapi_connection, connection_record):
    """
    Hand transaction control to SQLAlchemy.

    pysqlite only opens transactions before DML, so ALTER TABLE would run
    outside the unit of work. With isolation_level=None the driver stays out
    of the way and the "begin" hook below emits BEGIN itself.
    """
    if not isinstance(dbapi_connection, sqlite3.Connection):
        return
    dbapi_connection.isolation_level = None
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys = ON")
    cursor.close()


@event.listens_for(Engine, "begin")
def _begin_sqlite_transaction(conn):
    if conn.dialect.name == "sqlite":
        conn.exec_driver_sql("BEGIN")
