"""
Permit Blueprint — permit-to-work API.

Endpoints (all under /api/v1, tenant from the JWT):
    POST   /permits                                  create (201)
    GET    /permits?status=&type=&work_order_id=     list
    GET    /permits/kpis                             safety KPIs
    GET    /permits/activity?user_id=                per-user activity
    GET    /permits/<id>                             detail
    PUT    /permits/<id>                             update
    POST   /permits/<id>/approve                     approve active step
    POST   /permits/<id>/reject                      reject active step
    POST   /permits/<id>/escalate                    manual escalation
    POST   /permits/<id>/isolation/<index>/complete  complete isolation step
    POST   /permits/<id>/incidents                   log safety incident (201)
    GET    /permits/<id>/history                     history log

Layer contract:
    - Blueprint: parse request, resolve identity, call service, jsonify.
    - NO db.session calls here; all writes are owned by permit_service.
    - Errors are raised as cmms.core.exceptions types and rendered by the
      app-level handlers.
"""

import logging

from flask import Blueprint, jsonify, request

from cmms.blueprints.identity import current_roles, current_user_id, json_body, require_tenant
from cmms.core.exceptions import ValidationError
from cmms.services import permit_service

logger = logging.getLogger(__name__)

permit_bp = Blueprint("permits", __name__, url_prefix="/api/v1")


@permit_bp.route("/permits", methods=["POST"])
def create_permit():
    tenant_id = require_tenant()
    permit = permit_service.create_permit(tenant_id, json_body(), user_id=current_user_id())
    return jsonify(permit.to_dict()), 201


@permit_bp.route("/permits", methods=["GET"])
def list_permits():
    tenant_id = require_tenant()
    permits = permit_service.list_permits(
        tenant_id,
        status=request.args.get("status") or None,
        type=request.args.get("type") or None,
        work_order_id=request.args.get("work_order_id", type=int),
    )
    return jsonify({"items": [p.to_dict() for p in permits], "total": len(permits)})


@permit_bp.route("/permits/kpis", methods=["GET"])
def safety_kpis():
    tenant_id = require_tenant()
    return jsonify(permit_service.get_safety_kpis(tenant_id))


@permit_bp.route("/permits/activity", methods=["GET"])
def permit_activity():
    tenant_id = require_tenant()
    user_id = request.args.get("user_id", type=int)
    roles = current_roles()
    if user_id is None:
        user_id = current_user_id()
    elif user_id != current_user_id():
        roles = []  # another user's roles are not known here
    return jsonify(permit_service.get_permit_activity(tenant_id, user_id, roles=roles))


@permit_bp.route("/permits/<int:permit_id>", methods=["GET"])
def get_permit(permit_id):
    tenant_id = require_tenant()
    return jsonify(permit_service.get_permit(tenant_id, permit_id).to_dict())


@permit_bp.route("/permits/<int:permit_id>", methods=["PUT"])
def update_permit(permit_id):
    tenant_id = require_tenant()
    permit = permit_service.update_permit(tenant_id, permit_id, json_body(), user_id=current_user_id())
    return jsonify(permit.to_dict())


def _notes(data):
    notes = data.get("notes")
    if notes is not None and not isinstance(notes, str):
        raise ValidationError("notes must be a string")
    return notes


@permit_bp.route("/permits/<int:permit_id>/approve", methods=["POST"])
def approve_permit(permit_id):
    tenant_id = require_tenant()
    permit = permit_service.approve_permit(
        tenant_id, permit_id,
        user_id=current_user_id(), roles=current_roles(), notes=_notes(json_body()),
    )
    return jsonify(permit.to_dict())


@permit_bp.route("/permits/<int:permit_id>/reject", methods=["POST"])
def reject_permit(permit_id):
    tenant_id = require_tenant()
    permit = permit_service.reject_permit(
        tenant_id, permit_id,
        user_id=current_user_id(), roles=current_roles(), notes=_notes(json_body()),
    )
    return jsonify(permit.to_dict())


@permit_bp.route("/permits/<int:permit_id>/escalate", methods=["POST"])
def escalate_permit(permit_id):
    tenant_id = require_tenant()
    permit = permit_service.escalate_permit(
        tenant_id, permit_id, user_id=current_user_id(), notes=_notes(json_body()),
    )
    return jsonify(permit.to_dict())


@permit_bp.route("/permits/<int:permit_id>/isolation/<int:index>/complete", methods=["POST"])
def complete_isolation_step(permit_id, index):
    tenant_id = require_tenant()
    data = json_body()
    permit = permit_service.complete_isolation_step(
        tenant_id, permit_id, index,
        user_id=current_user_id(), verification_notes=data.get("verification_notes"),
    )
    return jsonify(permit.to_dict())


@permit_bp.route("/permits/<int:permit_id>/incidents", methods=["POST"])
def log_incident(permit_id):
    tenant_id = require_tenant()
    incident = permit_service.log_permit_incident(
        tenant_id, permit_id, json_body(), user_id=current_user_id(),
    )
    return jsonify(incident.to_dict()), 201


@permit_bp.route("/permits/<int:permit_id>/history", methods=["GET"])
def permit_history(permit_id):
    tenant_id = require_tenant()
    return jsonify({"items": permit_service.get_permit_history(tenant_id, permit_id)})
