"""
Application Factory and Settings
=================================
Settings are loaded from environment variables (prefix ``CUSTODY_``) or a
``.env`` file.  ``create_app`` wires them into a Flask application together
with the database, structured logging, the ledger store and the read-only
status blueprint.

Usage:
    from app_config import create_app
    app = create_app()
    with app.app_context():
        store = app.extensions["ledger_store"]
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from flask import Flask
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    """Central config. Every value has a sensible single-node default."""

    model_config = SettingsConfigDict(
        env_prefix="CUSTODY_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    app_env: str = Field(default="development")
    log_level: Optional[str] = Field(default=None)

    # Relational store (evidence rows, custody timeline, mirror, anomalies)
    database_url: str = Field(default="sqlite:///custody.db")

    # Ledger files
    ledger_dir: str = Field(default="ledger-data")
    evidence_chain_id: str = Field(default="ndep-evidence-chain")
    custody_chain_id: str = Field(default="ndep-custody-chain")
    sealing_difficulty: int = Field(
        default=0,
        ge=0,
        le=6,
        description="Leading zero hex digits required on every linkage id (0 = off).",
    )

    # Bounded I/O
    file_read_timeout_seconds: float = Field(default=30.0, gt=0)
    mirror_timeout_seconds: float = Field(default=10.0, gt=0)

    # Detection defaults
    min_transfer_interval_ms: int = Field(default=60_000, ge=0)
    max_gap_hours: float = Field(default=24.0, gt=0)


def _engine_options(settings: Settings) -> Dict[str, Any]:
    """Bound how long a mirror write may wait on the database."""
    if settings.database_url.startswith("sqlite"):
        # SQLite pools do not accept pool_timeout; the driver lock wait is the bound.
        return {"connect_args": {"timeout": settings.mirror_timeout_seconds}}
    return {"pool_timeout": settings.mirror_timeout_seconds, "pool_pre_ping": True}


def create_app(
    settings: Optional[Settings] = None,
    overrides: Optional[Dict[str, Any]] = None,
) -> Flask:
    """
    Build the Flask application.

    Args:
        settings: Explicit settings (defaults to environment-derived).
        overrides: Settings field overrides, e.g. ``{"database_url": "sqlite://"}``.
    """
    from models import db
    from routes.ledger_status import ledger_bp
    from services.ledger_store import LedgerStore, SealingPolicy
    from services.structured_logging import init_logging

    settings = settings or Settings()
    if overrides:
        settings = settings.model_copy(update=overrides)

    app = Flask(__name__)
    app.config["CUSTODY_SETTINGS"] = settings
    app.config["ENV_NAME"] = settings.app_env
    app.config["SQLALCHEMY_DATABASE_URI"] = settings.database_url
    app.config["SQLALCHEMY_ENGINE_OPTIONS"] = _engine_options(settings)
    app.config["SQLALCHEMY_TRACK_MODIFICATIONS"] = False

    db.init_app(app)
    init_logging(app, level=settings.log_level, env=settings.app_env)

    app.extensions["ledger_store"] = LedgerStore(
        settings.ledger_dir,
        sealing_policy=SealingPolicy(difficulty=settings.sealing_difficulty),
    )
    app.register_blueprint(ledger_bp)

    logger.info(
        "Custody app created (env=%s, ledger_dir=%s)",
        settings.app_env,
        settings.ledger_dir,
    )
    return app
