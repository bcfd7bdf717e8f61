import os
import json
import hashlib
from datetime import datetime, timezone

from flask import Blueprint, current_app as app, request, jsonify, g
from flask_login import current_user
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from models import db

health_bp = Blueprint("health", __name__)


def _now():
    return datetime.now(timezone.utc)


# ---------------------
# Request context and access log
# ---------------------

@health_bp.before_app_request
def attach_request_context():
    # Only attach for API routes
    if not request.path.startswith("/api/"):
        return
    rid = request.headers.get("X-Request-Id") or hashlib.sha256(
        f"{_now().timestamp()}|{request.remote_addr}|{os.urandom(8).hex()}".encode()
    ).hexdigest()[:16]
    g.request_id = rid
    g._start_ts = _now()


@health_bp.after_app_request
def access_log(response):
    if not request.path.startswith("/api/"):
        return response
    start = getattr(g, "_start_ts", None)
    duration_ms = int((_now() - start).total_seconds() * 1000) if start else None
    user_id = current_user.get_id() if current_user and current_user.is_authenticated else None
    log = {
        "ts": _now().isoformat(),
        "logger": "access",
        "level": "INFO",
        "method": request.method,
        "path": request.path,
        "status": response.status_code,
        "duration_ms": duration_ms,
        "ip": request.headers.get("X-Forwarded-For", request.remote_addr),
        "request_id": getattr(g, "request_id", None),
        "user_id": user_id,
    }
    app.logger.info(json.dumps(log))
    if getattr(g, "request_id", None):
        response.headers.setdefault("X-Request-Id", g.request_id)
    return response


# ---------------------
# Health and readiness
# ---------------------

@health_bp.get("/health")
def health():
    return jsonify({"status": "ok", "timestamp": _now().isoformat(), "service": "MindMate API"})


@health_bp.get("/api/healthz")
def healthz():
    return jsonify({"status": "ok", "ts": _now().isoformat()})


@health_bp.get("/api/readyz")
def readyz():
    # Check DB connectivity
    try:
        db.session.execute(text("SELECT 1"))
        db_ok = True
    except SQLAlchemyError:
        db.session.rollback()
        app.logger.exception("Readiness check failed")
        db_ok = False
    return jsonify({
        "status": "ok" if db_ok else "degraded",
        "db": db_ok,
        "ts": _now().isoformat()
    }), (200 if db_ok else 503)
