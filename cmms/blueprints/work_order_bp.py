"""
Work Order Blueprint — work order lifecycle API.

Endpoints (all under /api/v1, tenant from the JWT):
    POST   /work-orders                  create (201)
    GET    /work-orders?status=          list
    GET    /work-orders/<id>             detail
    POST   /work-orders/<id>/approve     body: {"status": "pending|approved|rejected"}
    POST   /work-orders/<id>/assign      body: {"assignees": [user ids]}
    POST   /work-orders/<id>/start
    POST   /work-orders/<id>/complete    body: completion record
    POST   /work-orders/<id>/cancel

Transitions answer 409 when linked permits are not ready and 404 when
the work order or a linked permit is missing.
"""

import logging

from flask import Blueprint, jsonify, request

from cmms.blueprints.identity import current_user_id, json_body, require_tenant
from cmms.services import work_order_lifecycle, work_order_service

logger = logging.getLogger(__name__)

work_order_bp = Blueprint("work_orders", __name__, url_prefix="/api/v1")


@work_order_bp.route("/work-orders", methods=["POST"])
def create_work_order():
    tenant_id = require_tenant()
    wo = work_order_service.create_work_order(tenant_id, json_body(), user_id=current_user_id())
    return jsonify(wo.to_dict()), 201


@work_order_bp.route("/work-orders", methods=["GET"])
def list_work_orders():
    tenant_id = require_tenant()
    items = work_order_service.list_work_orders(tenant_id, status=request.args.get("status") or None)
    return jsonify({"items": [wo.to_dict() for wo in items], "total": len(items)})


@work_order_bp.route("/work-orders/<int:work_order_id>", methods=["GET"])
def get_work_order(work_order_id):
    tenant_id = require_tenant()
    return jsonify(work_order_service.get_work_order(tenant_id, work_order_id).to_dict())


@work_order_bp.route("/work-orders/<int:work_order_id>/approve", methods=["POST"])
def approve_work_order(work_order_id):
    tenant_id = require_tenant()
    wo = work_order_lifecycle.approve_work_order(
        tenant_id, work_order_id, json_body().get("status"), user_id=current_user_id(),
    )
    return jsonify(wo.to_dict())


@work_order_bp.route("/work-orders/<int:work_order_id>/assign", methods=["POST"])
def assign_work_order(work_order_id):
    tenant_id = require_tenant()
    wo = work_order_lifecycle.assign_work_order(
        tenant_id, work_order_id, json_body().get("assignees"), user_id=current_user_id(),
    )
    return jsonify(wo.to_dict())


@work_order_bp.route("/work-orders/<int:work_order_id>/start", methods=["POST"])
def start_work_order(work_order_id):
    tenant_id = require_tenant()
    wo = work_order_lifecycle.start_work_order(tenant_id, work_order_id, user_id=current_user_id())
    return jsonify(wo.to_dict())


@work_order_bp.route("/work-orders/<int:work_order_id>/complete", methods=["POST"])
def complete_work_order(work_order_id):
    tenant_id = require_tenant()
    wo = work_order_lifecycle.complete_work_order(
        tenant_id, work_order_id, json_body(), user_id=current_user_id(),
    )
    return jsonify(wo.to_dict())


@work_order_bp.route("/work-orders/<int:work_order_id>/cancel", methods=["POST"])
def cancel_work_order(work_order_id):
    tenant_id = require_tenant()
    wo = work_order_lifecycle.cancel_work_order(tenant_id, work_order_id, user_id=current_user_id())
    return jsonify(wo.to_dict())
