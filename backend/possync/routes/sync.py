# Overview: Offline sync API endpoints.

from flask import Blueprint, current_app, g, jsonify, request

from ..decorators import require_sync_context
from ..extensions import db
from ..services import operation_ledger_service
from ..services.sync_service import SyncService
from possync.domain.operations import parse_operation_input
from possync.validation import ValidationError, require_uuid


sync_bp = Blueprint("sync", __name__, url_prefix="/api/sync")


class SyncRequestError(ValueError):
    pass


def _parse_batch(data) -> list:
    if not isinstance(data, dict):
        raise SyncRequestError("JSON body required")
    operations = data.get("operations")
    if not isinstance(operations, list):
        raise SyncRequestError("operations must be a list")

    max_size = current_app.config.get("SYNC_MAX_BATCH_SIZE", 100)
    if len(operations) > max_size:
        raise SyncRequestError(f"Batch exceeds maximum size of {max_size}")

    parsed = []
    for index, raw in enumerate(operations):
        try:
            parsed.append(parse_operation_input(raw))
        except ValidationError as exc:
            raise SyncRequestError(f"operations[{index}]: {exc}")
    return parsed


@sync_bp.post("/operations")
@require_sync_context
def apply_operations_route():
    """
    Apply a batch of offline operations in order.

    Body: {"operations": [{client_op_id, type, payload, occurred_at?, branch_id?}, ...]}

    Always 200 for a well-formed batch: per-operation failures are reported
    in the results and stop the batch (stopped_at).
    """
    try:
        operations = _parse_batch(request.get_json(silent=True))
        result = SyncService().apply_batch(g.sync_context, operations)
        return jsonify(result.to_dict()), 200
    except SyncRequestError as e:
        return jsonify({"error": str(e)}), 400
    except Exception:
        current_app.logger.exception("Sync batch failed")
        return jsonify({"error": "Internal server error"}), 500


@sync_bp.get("/operations/<client_op_id>")
@require_sync_context
def get_operation_route(client_op_id: str):
    try:
        client_op_id = require_uuid(client_op_id, "client_op_id")
    except ValidationError as e:
        return jsonify({"error": str(e)}), 400

    record = operation_ledger_service.find_by_key(db.session, g.sync_context.tenant_id, client_op_id)
    if record is None:
        return jsonify({"error": "Operation not found"}), 404
    return jsonify({"operation": record.to_dict()}), 200
