# Overview: Request decorators establishing sync caller context.

from functools import wraps

from flask import g, jsonify, request

from .services.sync_service import SyncContext


def require_sync_context(f):
    """
    Require the caller identity forwarded by the authentication gateway.

    Sets g.sync_context (SyncContext) from:
    - X-Tenant-Id, X-Branch-Id, X-Actor-Id (required)
    - X-Actor-Role (optional)

    Returns 401 when any required header is missing.
    """
    @wraps(f)
    def decorated_function(*args, **kwargs):
        tenant_id = (request.headers.get("X-Tenant-Id") or "").strip()
        branch_id = (request.headers.get("X-Branch-Id") or "").strip()
        actor_id = (request.headers.get("X-Actor-Id") or "").strip()
        if not tenant_id or not branch_id or not actor_id:
            return jsonify({"error": "Authentication required"}), 401

        g.sync_context = SyncContext(
            tenant_id=tenant_id,
            branch_id=branch_id,
            actor_id=actor_id,
            actor_role=(request.headers.get("X-Actor-Role") or "").strip() or None,
        )
        return f(*args, **kwargs)

    return decorated_function
