# backend/shiftledger/__init__.py
from flask import Flask, request

from .config import Config
from .extensions import db, migrate


def create_app(test_config: dict | None = None, collaborators=None) -> Flask:
    app = Flask(__name__, instance_relative_config=True)
    app.config.from_object(Config)
    if test_config:
        app.config.update(test_config)

    # SQLite waits on a locked database instead of failing immediately
    if app.config["SQLALCHEMY_DATABASE_URI"].startswith("sqlite"):
        engine_options = dict(app.config.get("SQLALCHEMY_ENGINE_OPTIONS") or {})
        engine_options.setdefault("connect_args", {"timeout": 15})
        app.config["SQLALCHEMY_ENGINE_OPTIONS"] = engine_options

    # Initialize extensions
    db.init_app(app)
    migrate.init_app(app, db)

    # Import models so Alembic can discover metadata reliably
    from . import models  # noqa: F401

    # Ledger policy, collaborators and the period gate are shared by all services
    from .collaborators import Collaborators
    from .policies import LedgerPolicy
    from .services.concurrency import PeriodGate

    app.extensions["shiftledger.policy"] = LedgerPolicy.from_config(app.config)
    app.extensions["shiftledger.collaborators"] = collaborators or Collaborators()
    app.extensions["shiftledger.period_gate"] = PeriodGate()

    # Register blueprints
    from .routes.system import system_bp
    from .routes.auth import auth_bp
    from .routes.work_periods import work_periods_bp
    from .routes.receipts import receipts_bp
    from .routes.reports import reports_bp
    from .routes.audit import audit_bp

    app.register_blueprint(system_bp)
    app.register_blueprint(auth_bp)
    app.register_blueprint(work_periods_bp)
    app.register_blueprint(receipts_bp)
    app.register_blueprint(reports_bp)
    app.register_blueprint(audit_bp)

    @app.after_request
    def add_cors_headers(response):
        origin = request.headers.get("Origin")
        allowed_origins = {
            "http://localhost:5173",
            "http://127.0.0.1:5173",
            "http://localhost:4173",
            "http://127.0.0.1:4173",
        }
        if origin in allowed_origins:
            response.headers["Access-Control-Allow-Origin"] = origin
            response.headers["Vary"] = "Origin"
            response.headers["Access-Control-Allow-Headers"] = "Authorization, Content-Type"
            response.headers["Access-Control-Allow-Methods"] = "GET,POST,PUT,DELETE,PATCH,OPTIONS"
        return response

    # Register CLI commands
    from .cli import register_commands
    register_commands(app)

    # Background outbox worker (printing, payment and tax notifications)
    if app.config.get("DISPATCH_WORKER_ENABLED"):
        from .services.dispatch_service import DispatchWorker
        worker = DispatchWorker(app, poll_seconds=app.config["DISPATCH_POLL_SECONDS"])
        app.extensions["shiftledger.dispatch_worker"] = worker
        worker.start()

    return app
