# backend/invman/__init__.py
from __future__ import annotations

import logging
from typing import Mapping, Optional

from flask import Flask

from .config import Config
from .extensions import db, sqlite_engine_options


def create_app(config_overrides: Optional[Mapping] = None) -> Flask:
    """
    Build one inventory store.

    Each app owns its own engine, so several stores (e.g. one per test) can
    coexist in a process.
    """
    app = Flask(__name__, instance_relative_config=True)
    app.config.from_object(Config)
    if config_overrides:
        app.config.update(config_overrides)

    if app.config["SQLALCHEMY_DATABASE_URI"].startswith("sqlite"):
        app.config["SQLALCHEMY_ENGINE_OPTIONS"] = sqlite_engine_options(app)
    app.logger.setLevel(logging.getLevelName(str(app.config["LOG_LEVEL"]).upper()))

    # Initialize extensions
    db.init_app(app)

    # Import models so create_all sees every table
    from . import models  # noqa: F401

    # Register CLI commands
    from .cli import register_commands
    register_commands(app)

    return app


def init_database() -> dict:
    """
    Create tables and seed roles, permissions and runtime settings.

    Idempotent. Must run inside an app context.
    """
    from .services import permission_service, config_service

    # DDL runs on its own connection; the session must not hold a transaction
    db.session.commit()
    db.create_all()
    roles = [role.name for role in permission_service.create_default_roles()]
    permissions = permission_service.initialize_permissions()
    grants = permission_service.assign_default_role_permissions()
    settings = config_service.seed_defaults()
    return {
        "roles": roles,
        "permissions_created": permissions,
        "grants_created": grants,
        "settings_created": settings,
    }
