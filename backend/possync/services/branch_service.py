# Overview: Branch lookup and the frozen-branch guard used before applying sync operations.

from __future__ import annotations

from typing import Optional

from ..extensions import db
from ..models import Branch
from .audit_service import write_audit


class BranchError(Exception):
    pass


class BranchFrozenError(Exception):
    code = "BRANCH_FROZEN"

    def __init__(self, message: str = "Branch is frozen"):
        super().__init__(message)
        self.message = message


def get_branch(tenant_id: str, branch_id: str, session=None) -> Optional[Branch]:
    session = session or db.session
    return session.query(Branch).filter_by(id=branch_id, tenant_id=tenant_id).one_or_none()


def assert_branch_active(session, tenant_id: str, branch_id: str) -> None:
    """Raise BranchFrozenError when the branch is FROZEN. Unknown branches pass."""
    branch = get_branch(tenant_id, branch_id, session)
    if branch is not None and branch.status == "FROZEN":
        raise BranchFrozenError()


def create_branch(tenant_id: str, name: str, branch_id: str | None = None) -> Branch:
    if not name or not name.strip():
        raise BranchError("Branch name is required")
    branch = Branch(tenant_id=tenant_id, name=name.strip(), status="ACTIVE")
    if branch_id:
        branch.id = branch_id
    db.session.add(branch)
    db.session.commit()
    return branch


def list_branches(tenant_id: str | None = None) -> list[Branch]:
    query = db.session.query(Branch)
    if tenant_id:
        query = query.filter_by(tenant_id=tenant_id)
    return query.order_by(Branch.name.asc()).all()


def _set_status(tenant_id: str, branch_id: str, status: str, action_type: str, actor_id: str | None) -> Branch:
    branch = get_branch(tenant_id, branch_id)
    if branch is None:
        raise BranchError("Branch not found")
    if branch.status == status:
        return branch

    previous = branch.status
    branch.status = status
    write_audit(
        db.session,
        tenant_id=tenant_id,
        branch_id=branch_id,
        employee_id=actor_id,
        actor_role=None,
        action_type=action_type,
        resource_type="BRANCH",
        resource_id=branch_id,
        details={"from": previous, "to": status},
    )
    db.session.commit()
    return branch


def freeze_branch(tenant_id: str, branch_id: str, actor_id: str | None = None) -> Branch:
    return _set_status(tenant_id, branch_id, "FROZEN", "BRANCH_FROZEN", actor_id)


def unfreeze_branch(tenant_id: str, branch_id: str, actor_id: str | None = None) -> Branch:
    return _set_status(tenant_id, branch_id, "ACTIVE", "BRANCH_UNFROZEN", actor_id)
