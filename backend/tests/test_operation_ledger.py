import uuid
from datetime import datetime

from possync.models import OfflineSyncOperation
from possync.services import operation_ledger_service as ledger


def _insert(session, tenant_id, client_op_id, branch_id="b-1"):
    return ledger.insert_processing(
        session,
        tenant_id=tenant_id,
        branch_id=branch_id,
        client_op_id=client_op_id,
        type="SALE_FINALIZED",
        payload={"items": []},
        occurred_at=datetime(2026, 3, 1, 9, 0, 0),
    )


class TestOperationLedger:
    """Claiming and finishing ledger rows."""

    def test_insert_claims_key(self, db_session, tenant_id):
        op_id = str(uuid.uuid4())
        record = _insert(db_session, tenant_id, op_id)
        db_session.commit()

        assert record.status == "PROCESSING"
        assert ledger.find_by_key(db_session, tenant_id, op_id).id == record.id

    def test_duplicate_insert_returns_none(self, db_session, tenant_id):
        op_id = str(uuid.uuid4())
        _insert(db_session, tenant_id, op_id)
        db_session.commit()

        assert _insert(db_session, tenant_id, op_id, branch_id="b-2") is None
        # outer transaction is still usable
        db_session.commit()
        assert db_session.query(OfflineSyncOperation).count() == 1

    def test_key_is_scoped_per_tenant(self, db_session, tenant_id):
        op_id = str(uuid.uuid4())
        assert _insert(db_session, tenant_id, op_id) is not None
        assert _insert(db_session, str(uuid.uuid4()), op_id) is not None
        db_session.commit()
        assert ledger.find_by_key(db_session, "unknown-tenant", op_id) is None

    def test_mark_applied_only_from_processing(self, db_session, tenant_id):
        op_id = str(uuid.uuid4())
        _insert(db_session, tenant_id, op_id)

        assert ledger.mark_applied(db_session, tenant_id, op_id, {"type": "SALE_FINALIZED", "saleId": "s-1"})
        assert not ledger.mark_failed(db_session, tenant_id, op_id, "VALIDATION_FAILED", "late")
        db_session.commit()

        record = ledger.find_by_key(db_session, tenant_id, op_id)
        assert record.status == "APPLIED"
        assert record.result == {"type": "SALE_FINALIZED", "saleId": "s-1"}
        assert record.error_code is None

    def test_mark_failed_is_terminal(self, db_session, tenant_id):
        op_id = str(uuid.uuid4())
        _insert(db_session, tenant_id, op_id)

        assert ledger.mark_failed(db_session, tenant_id, op_id, "DEPENDENCY_MISSING", "Register not found")
        assert not ledger.mark_applied(db_session, tenant_id, op_id, {})
        db_session.commit()

        record = ledger.find_by_key(db_session, tenant_id, op_id)
        assert record.status == "FAILED"
        assert record.error_code == "DEPENDENCY_MISSING"
        assert record.result is None


class TestToApplyResult:
    """Stored rows rendered as batch results."""

    def test_applied(self, db_session, tenant_id):
        op_id = str(uuid.uuid4())
        _insert(db_session, tenant_id, op_id)
        ledger.mark_applied(db_session, tenant_id, op_id, {"type": "SALE_FINALIZED", "saleId": "s-1"})
        db_session.commit()

        result = ledger.to_apply_result(ledger.find_by_key(db_session, tenant_id, op_id), True)
        assert result.to_dict() == {
            "client_op_id": op_id,
            "type": "SALE_FINALIZED",
            "status": "APPLIED",
            "deduped": True,
            "result": {"type": "SALE_FINALIZED", "saleId": "s-1"},
        }

    def test_failed(self, db_session, tenant_id):
        op_id = str(uuid.uuid4())
        _insert(db_session, tenant_id, op_id)
        ledger.mark_failed(db_session, tenant_id, op_id, "VALIDATION_FAILED", "Cannot finalize empty sale")
        db_session.commit()

        result = ledger.to_apply_result(ledger.find_by_key(db_session, tenant_id, op_id), False)
        assert result.to_dict()["error"] == {"code": "VALIDATION_FAILED", "message": "Cannot finalize empty sale"}

    def test_processing_reports_failed(self, db_session, tenant_id):
        op_id = str(uuid.uuid4())
        record = _insert(db_session, tenant_id, op_id)
        db_session.commit()

        result = ledger.to_apply_result(record, True)
        assert result.status == "FAILED"
        assert result.error_code == "UNKNOWN"
        assert result.error_message == "Operation is still processing"
