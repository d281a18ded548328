"""
Transfer Request Blueprint — the AFT approval workflow over HTTP.

All routes are under /api/v1/requests and require a session with an
active role (``Authorization: Bearer <token>`` or the ``aft_session`` cookie).

Endpoints:
    POST   /api/v1/requests                          create draft (requestor)
    GET    /api/v1/requests                          role-scoped dashboard list
           Query params: status, include_terminal, limit, offset
    GET    /api/v1/requests/<id>                     detail + allowed_actions
    PATCH  /api/v1/requests/<id>                     edit draft fields

    POST   /api/v1/requests/<id>/submit              { signature, notes }
    POST   /api/v1/requests/<id>/approve             { notes }
    POST   /api/v1/requests/<id>/approve-signed      { signature, notes }
    POST   /api/v1/requests/<id>/reject              { reason, notes }
    POST   /api/v1/requests/<id>/assign-dta          { notes, drive_id? }
    POST   /api/v1/requests/<id>/complete-transfer   { signature, sme_user_id, drive_id?, notes }
    POST   /api/v1/requests/<id>/sme-sign            { signature?, notes }
    POST   /api/v1/requests/<id>/dispose             { notes, disposition?, return_drive? }
    POST   /api/v1/requests/<id>/cancel              { notes }

    GET    /api/v1/requests/<id>/timeline
    GET    /api/v1/requests/<id>/signatures
    GET    /api/v1/requests/signatures/<sig_id>/integrity

Every transition body may carry ``expected_status``: the status the client
last saw. A mismatch answers 409 with the actual status.

Layer contract:
    - Blueprint: parse input, call workflow_service, map errors to JSON.
    - NO db.session calls here — all writes owned by workflow_service.
    - NO inline role checks — the authorization gate lives in the service.
"""

import logging

from flask import Blueprint, g, jsonify, request
from werkzeug.exceptions import HTTPException

from aft.blueprints import flag_arg, paginate_args
from aft.core.exceptions import NotFoundError, StorageError
from aft.core.workflow import RequestStatus
from aft.middleware.session_auth import session_required
from aft.services import dashboard_service, workflow_service
from aft.utils.errors import E, api_error, error_response

logger = logging.getLogger(__name__)

request_bp = Blueprint("requests", __name__, url_prefix="/api/v1/requests")

_STATUS_VALUES = {s.value for s in RequestStatus}


# ── Error handlers ─────────────────────────────────────────────────────────────


@request_bp.errorhandler(NotFoundError)
def _handle_not_found(error: NotFoundError):
    return error_response(error)


@request_bp.errorhandler(StorageError)
def _handle_storage(error: StorageError):
    return error_response(error)


@request_bp.errorhandler(Exception)
def _handle_unexpected(error: Exception):
    if isinstance(error, HTTPException):
        return error
    logger.exception("Unexpected error in request_bp endpoint=%s", request.endpoint)
    return api_error(E.INTERNAL, "Internal server error")


# ── Helpers ────────────────────────────────────────────────────────────────────


def _body() -> dict:
    return request.get_json(silent=True) or {}


def _respond(result, err, status=200):
    if err:
        return error_response(err)
    return jsonify(result.to_dict()), status


# ── Drafts & reads ─────────────────────────────────────────────────────────────


@request_bp.route("", methods=["POST"])
@session_required
def create_request():
    """Create a draft. Required: transfer_type, classification, transfer_purpose, data_description."""
    req, err = workflow_service.create_request(g.aft_session, _body())
    if err:
        return error_response(err)
    return jsonify(req.to_dict()), 201


@request_bp.route("", methods=["GET"])
@session_required
def list_requests():
    """Dashboard list scoped to the active role, with progress and at-risk flags."""
    status = request.args.get("status")
    if status and status not in _STATUS_VALUES:
        return api_error(
            E.VALIDATION_INVALID, f"Unknown status '{status}'",
            details={"valid_statuses": sorted(_STATUS_VALUES)},
        )
    limit, offset = paginate_args()
    data = dashboard_service.list_for_session(
        g.aft_session,
        status=status or None,
        include_terminal=flag_arg("include_terminal", default=True),
        limit=limit,
        offset=offset,
    )
    return jsonify(data), 200


@request_bp.route("/<int:request_id>", methods=["GET"])
@session_required
def get_request(request_id):
    data, err = workflow_service.get_request(request_id, g.aft_session)
    if err:
        return error_response(err)
    return jsonify(data), 200


@request_bp.route("/<int:request_id>", methods=["PATCH"])
@session_required
def update_request(request_id):
    data = _body()
    expected = data.pop("expected_status", None)
    req, err = workflow_service.update_draft(request_id, g.aft_session, data, expected_status=expected)
    if err:
        return error_response(err)
    return jsonify(req.to_dict()), 200


# ── Transitions ────────────────────────────────────────────────────────────────


@request_bp.route("/<int:request_id>/submit", methods=["POST"])
@session_required
def submit_request(request_id):
    data = _body()
    result, err = workflow_service.submit_request(
        request_id, g.aft_session, data.get("signature"),
        notes=data.get("notes"), expected_status=data.get("expected_status"),
    )
    return _respond(result, err)


@request_bp.route("/<int:request_id>/approve", methods=["POST"])
@session_required
def approve_request(request_id):
    data = _body()
    result, err = workflow_service.approve(
        request_id, g.aft_session, data.get("notes"),
        expected_status=data.get("expected_status"),
    )
    return _respond(result, err)


@request_bp.route("/<int:request_id>/approve-signed", methods=["POST"])
@session_required
def approve_signed(request_id):
    data = _body()
    result, err = workflow_service.approve_with_signature(
        request_id, g.aft_session, data.get("signature"), data.get("notes"),
        expected_status=data.get("expected_status"),
    )
    return _respond(result, err)


@request_bp.route("/<int:request_id>/reject", methods=["POST"])
@session_required
def reject_request(request_id):
    data = _body()
    result, err = workflow_service.reject(
        request_id, g.aft_session, data.get("reason"), data.get("notes"),
        expected_status=data.get("expected_status"),
    )
    return _respond(result, err)


@request_bp.route("/<int:request_id>/assign-dta", methods=["POST"])
@session_required
def assign_dta(request_id):
    data = _body()
    result, err = workflow_service.assign_dta(
        request_id, g.aft_session, data.get("notes"),
        drive_id=data.get("drive_id"),
        expected_status=data.get("expected_status"),
    )
    return _respond(result, err)


@request_bp.route("/<int:request_id>/complete-transfer", methods=["POST"])
@session_required
def complete_transfer(request_id):
    data = _body()
    result, err = workflow_service.complete_transfer(
        request_id, g.aft_session, data.get("signature"), data.get("sme_user_id"),
        data.get("notes"), drive_id=data.get("drive_id"), expected_status=data.get("expected_status"),
    )
    return _respond(result, err)


@request_bp.route("/<int:request_id>/sme-sign", methods=["POST"])
@session_required
def sme_sign(request_id):
    data = _body()
    result, err = workflow_service.sign_as_sme(
        request_id, g.aft_session, data.get("notes"), data.get("signature"),
        expected_status=data.get("expected_status"),
    )
    return _respond(result, err)


@request_bp.route("/<int:request_id>/dispose", methods=["POST"])
@session_required
def dispose(request_id):
    data = _body()
    result, err = workflow_service.dispose(
        request_id, g.aft_session, data.get("notes"),
        disposition=data.get("disposition"),
        return_drive=data.get("return_drive", True) is not False,
        expected_status=data.get("expected_status"),
    )
    return _respond(result, err)


@request_bp.route("/<int:request_id>/cancel", methods=["POST"])
@session_required
def cancel_request(request_id):
    data = _body()
    result, err = workflow_service.cancel(
        request_id, g.aft_session, data.get("notes"),
        expected_status=data.get("expected_status"),
    )
    return _respond(result, err)


# ── Audit ──────────────────────────────────────────────────────────────────────


@request_bp.route("/<int:request_id>/timeline", methods=["GET"])
@session_required
def request_timeline(request_id):
    _, err = workflow_service.get_request(request_id, g.aft_session)
    if err:
        return error_response(err)
    data, err = workflow_service.get_timeline(request_id)
    if err:
        return error_response(err)
    return jsonify(data), 200


@request_bp.route("/<int:request_id>/signatures", methods=["GET"])
@session_required
def request_signatures(request_id):
    _, err = workflow_service.get_request(request_id, g.aft_session)
    if err:
        return error_response(err)
    items, err = workflow_service.list_signatures(request_id)
    if err:
        return error_response(err)
    return jsonify({"items": items, "total": len(items)}), 200


@request_bp.route("/signatures/<int:signature_id>/integrity", methods=["GET"])
@session_required
def signature_integrity(signature_id):
    """Recompute the stored hash and re-check the certificate window."""
    data, err = workflow_service.verify_signature(signature_id, g.aft_session)
    if err:
        return error_response(err)
    return jsonify(data), 200
