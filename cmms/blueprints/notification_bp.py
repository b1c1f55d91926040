"""
Notification Blueprint — the caller's in-app notifications.

Endpoints:
    GET   /api/v1/notifications?unread_only=&limit=&offset=
    GET   /api/v1/notifications/unread-count
    PATCH /api/v1/notifications/<id>/read
"""

from flask import Blueprint, jsonify, request

from cmms.blueprints.identity import current_user_id, require_tenant
from cmms.core.exceptions import ValidationError
from cmms.services.notification import NotificationService

notification_bp = Blueprint("notifications", __name__, url_prefix="/api/v1")


def _require_user():
    user_id = current_user_id()
    if user_id is None:
        raise ValidationError("User identity required")
    return user_id


@notification_bp.route("/notifications", methods=["GET"])
def list_notifications():
    tenant_id = require_tenant()
    user_id = _require_user()
    unread_only = request.args.get("unread_only", "false").lower() == "true"
    limit = min(request.args.get("limit", 50, type=int), 200)
    offset = request.args.get("offset", 0, type=int)

    items, total = NotificationService.list_for_recipient(
        user_id, tenant_id=tenant_id, unread_only=unread_only, limit=limit, offset=offset,
    )
    return jsonify({"items": [n.to_dict() for n in items], "total": total})


@notification_bp.route("/notifications/unread-count", methods=["GET"])
def unread_count():
    tenant_id = require_tenant()
    user_id = _require_user()
    return jsonify({"unread_count": NotificationService.unread_count(user_id, tenant_id=tenant_id)})


@notification_bp.route("/notifications/<int:notification_id>/read", methods=["PATCH"])
def mark_read(notification_id):
    tenant_id = require_tenant()
    user_id = _require_user()
    notif = NotificationService.mark_read(notification_id, user_id=user_id, tenant_id=tenant_id)
    return jsonify(notif.to_dict())
