"""
Media Blueprint — the Media Custodian's drive register.

Endpoints:
    GET    /api/v1/drives                 list (custodian/admin: all, DTA: own)
           Query params: status
    POST   /api/v1/drives                 register { serial_number, model, capacity, media_type, ... }
    POST   /api/v1/drives/<id>/issue      { dta_user_id, purpose }
    POST   /api/v1/drives/<id>/return
    POST   /api/v1/drives/<id>/retire

Role checks live in ``aft.services.media_inventory``.
"""

import logging

from flask import Blueprint, g, jsonify, request
from werkzeug.exceptions import HTTPException

from aft.core.exceptions import StorageError
from aft.middleware.session_auth import session_required
from aft.services import media_inventory
from aft.utils.errors import E, api_error, error_response

logger = logging.getLogger(__name__)

media_bp = Blueprint("media", __name__, url_prefix="/api/v1/drives")


@media_bp.errorhandler(StorageError)
def _handle_storage(error: StorageError):
    return error_response(error)


@media_bp.errorhandler(Exception)
def _handle_unexpected(error: Exception):
    if isinstance(error, HTTPException):
        return error
    logger.exception("Unexpected error in media_bp endpoint=%s", request.endpoint)
    return api_error(E.INTERNAL, "Internal server error")


def _drive_response(drive, err, status=200):
    if err:
        return error_response(err)
    return jsonify(drive.to_dict()), status


@media_bp.route("", methods=["GET"])
@session_required
def list_drives():
    items, err = media_inventory.list_drives(g.aft_session, status=request.args.get("status") or None)
    if err:
        return error_response(err)
    return jsonify({"items": items, "total": len(items)}), 200


@media_bp.route("", methods=["POST"])
@session_required
def register_drive():
    drive, err = media_inventory.register_drive(g.aft_session, request.get_json(silent=True) or {})
    return _drive_response(drive, err, 201)


@media_bp.route("/<int:drive_id>/issue", methods=["POST"])
@session_required
def issue_drive(drive_id):
    data = request.get_json(silent=True) or {}
    drive, err = media_inventory.issue_drive(
        drive_id, g.aft_session, data.get("dta_user_id"), data.get("purpose"),
    )
    return _drive_response(drive, err)


@media_bp.route("/<int:drive_id>/return", methods=["POST"])
@session_required
def return_drive(drive_id):
    drive, err = media_inventory.return_drive(drive_id, g.aft_session)
    return _drive_response(drive, err)


@media_bp.route("/<int:drive_id>/retire", methods=["POST"])
@session_required
def retire_drive(drive_id):
    drive, err = media_inventory.retire_drive(drive_id, g.aft_session)
    return _drive_response(drive, err)
