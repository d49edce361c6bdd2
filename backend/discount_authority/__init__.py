# backend/discount_authority/__init__.py
from flask import Flask

from .config import Config
from .extensions import db, migrate


def create_app(test_config: dict | None = None, audit_sink=None) -> Flask:
    app = Flask(__name__, instance_relative_config=True)
    app.config.from_object(Config)
    if test_config:
        app.config.update(test_config)

    # Initialize extensions
    db.init_app(app)
    migrate.init_app(app, db)

    # Import models so Alembic can discover metadata reliably
    from . import models  # noqa: F401

    # Policy is parsed once; a bad table fails startup with PolicyConfigError
    from .services.policy_service import POLICY_EXTENSION_KEY, load_policy
    app.extensions[POLICY_EXTENSION_KEY] = load_policy(app.config)

    from .services.audit_service import AUDIT_EXTENSION_KEY, AuditDispatcher, DatabaseAuditSink
    app.extensions[AUDIT_EXTENSION_KEY] = AuditDispatcher(
        audit_sink or DatabaseAuditSink(app),
        logger=app.logger,
        timeout=app.config["AUDIT_WRITE_TIMEOUT_SECONDS"],
        retry_attempts=app.config["AUDIT_RETRY_ATTEMPTS"],
        retry_backoff=app.config["AUDIT_RETRY_BACKOFF_SECONDS"],
    )

    # Register blueprints
    from .routes.system import system_bp
    from .routes.discounts import discounts_bp
    from .routes.budgets import budgets_bp

    app.register_blueprint(system_bp)
    app.register_blueprint(discounts_bp)
    app.register_blueprint(budgets_bp)

    # Register CLI commands
    from .cli import register_commands
    register_commands(app)

    return app
