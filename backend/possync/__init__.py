# backend/possync/__init__.py
from flask import Flask

from .config import Config
from .extensions import db, migrate


def create_app(config_overrides: dict | None = None) -> Flask:
    app = Flask(__name__, instance_relative_config=True)
    app.config.from_object(Config)
    if config_overrides:
        app.config.update(config_overrides)

    # Initialize extensions
    db.init_app(app)
    migrate.init_app(app, db)

    # Import models so Alembic can discover metadata reliably
    from . import models  # noqa: F401

    # SQLite needs help to honor SAVEPOINT (used by the sync pipeline)
    if app.config["SQLALCHEMY_DATABASE_URI"].startswith("sqlite"):
        from .services.concurrency import enable_sqlite_savepoints
        with app.app_context():
            enable_sqlite_savepoints(db.engine)

    # Register blueprints
    from .routes.system import system_bp
    from .routes.sync import sync_bp

    app.register_blueprint(system_bp)
    app.register_blueprint(sync_bp)

    # Register CLI commands
    from .cli import register_commands
    register_commands(app)

    return app
