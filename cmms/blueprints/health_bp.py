"""
Health Blueprint — liveness and readiness probes.

    GET /api/v1/health        liveness
    GET /api/v1/health/ready  database reachable
"""

import logging

from flask import Blueprint, current_app, jsonify
from sqlalchemy import text

from cmms.models import db

logger = logging.getLogger(__name__)

health_bp = Blueprint("health", __name__, url_prefix="/api/v1/health")


@health_bp.route("", methods=["GET"])
def live():
    return jsonify({
        "status": "ok",
        "app": "cmms",
        "escalation_mode": current_app.config.get("PERMIT_ESCALATION_MODE"),
    })


@health_bp.route("/ready", methods=["GET"])
def ready():
    try:
        db.session.execute(text("SELECT 1"))
    except Exception:
        logger.exception("Readiness probe failed")
        return jsonify({"status": "error", "database": "unreachable"}), 503
    return jsonify({"status": "ok", "database": "ok"})
