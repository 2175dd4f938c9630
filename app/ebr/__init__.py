import logging
import uuid

from flask import Flask, g, jsonify, request
from dotenv import load_dotenv
from werkzeug.exceptions import HTTPException

from app.ebr.config import load_config
from app.ebr.db import init_db, rollback_db_session, teardown_db_session
from app.ebr.errors import EBRError
from app.ebr.routes import bp as routes_bp
from app.ebr.admin import bp as admin_bp
from app.ebr.modules.approvals.admin import bp as approvals_bp
from app.ebr.modules.batch_sections.admin import bp as batch_sections_bp
from app.ebr.modules.signatures.admin import bp as signatures_bp


def create_app() -> Flask:
    load_dotenv()
    app = Flask(__name__)
    app.config.from_mapping(load_config())
    app.json.sort_keys = bool(app.config.get("JSON_SORT_KEYS", False))
    app.logger.setLevel(getattr(logging, str(app.config.get("LOG_LEVEL") or "INFO"), logging.INFO))

    # Production guardrails (fail fast with clear logs)
    env = (app.config.get("ENV") or "").strip().lower()
    if env in ("prod", "production"):
        if not app.config.get("DATABASE_URL") or str(app.config["DATABASE_URL"]).strip() == "":
            raise RuntimeError("DATABASE_URL is required in production.")
        if str(app.config["DATABASE_URL"]).startswith("sqlite"):
            raise RuntimeError("DATABASE_URL must be Postgres in production (not sqlite).")
        if not app.config.get("SECRET_KEY") or str(app.config["SECRET_KEY"]) in ("", "change-me"):
            raise RuntimeError("SECRET_KEY must be set to a strong value in production (not default).")

    init_db(app)

    def _dispose_engine_on_fork() -> None:
        import os

        if hasattr(os, "register_at_fork"):
            def _after_fork_child():
                engine = app.extensions.get("sqlalchemy_engine")
                if engine:
                    engine.dispose()
                    app.logger.info("Disposed DB engine after fork (pid=%s)", os.getpid())

            os.register_at_fork(after_in_child=_after_fork_child)

    _dispose_engine_on_fork()

    @app.before_request
    def _assign_request_id():
        g.request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex

    @app.after_request
    def _echo_request_id(response):
        rid = getattr(g, "request_id", None)
        if rid:
            response.headers["X-Request-ID"] = rid
        return response

    app.register_blueprint(routes_bp)
    app.register_blueprint(admin_bp, url_prefix="/api")
    app.register_blueprint(batch_sections_bp, url_prefix="/api/batchRecordSections")
    app.register_blueprint(approvals_bp, url_prefix="/api/approvalRequests")
    app.register_blueprint(signatures_bp, url_prefix="/api/signatures")

    app.teardown_appcontext(teardown_db_session)

    @app.errorhandler(EBRError)
    def _err_domain(e: EBRError):  # type: ignore[no-redef]
        rollback_db_session()
        rid = getattr(g, "request_id", None)
        if e.status_code >= 500:
            app.logger.error("%s: %s (request_id=%s)", type(e).__name__, e.message, rid)
        else:
            app.logger.warning("%s: %s (request_id=%s)", type(e).__name__, e.message, rid)
        return jsonify(e.to_dict()), e.status_code

    @app.errorhandler(HTTPException)
    def _err_http(e: HTTPException):  # type: ignore[no-redef]
        return jsonify({"success": False, "error": e.description or e.name}), e.code or 500

    @app.errorhandler(Exception)
    def _err_500(e: Exception):  # type: ignore[no-redef]
        rollback_db_session()
        # Ensure stack trace shows in container logs.
        app.logger.exception("Unhandled 500 (request_id=%s)", getattr(g, "request_id", None))
        return jsonify({"success": False, "error": "Internal server error"}), 500

    logging.getLogger(__name__).info("create_app() complete; app ready to serve")

    return app
