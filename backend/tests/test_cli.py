import uuid
from decimal import Decimal

from conftest import make_op, sale_payload
from possync.models import AuditLog, Branch, CashMovement, CashRegister, CashSessionRecord, MenuItem
from possync.services import menu_service
from possync.services.sync_service import SyncService


class TestCli:
    """Bootstrap and maintenance commands."""

    def test_branch_create_and_freeze(self, app, db_session, tenant_id):
        runner = app.test_cli_runner()
        branch_id = str(uuid.uuid4())

        result = runner.invoke(args=['branches', 'create', '--tenant-id', tenant_id, '--name', 'Riverside',
                                     '--branch-id', branch_id])
        assert result.exit_code == 0, result.output
        assert 'PASS Created branch: Riverside' in result.output

        result = runner.invoke(args=['branches', 'freeze', '--tenant-id', tenant_id, '--branch-id', branch_id])
        assert result.exit_code == 0, result.output
        assert db_session.get(Branch, branch_id).status == 'FROZEN'
        assert db_session.query(AuditLog).filter_by(action_type='BRANCH_FROZEN').count() == 1

    def test_freeze_unknown_branch_fails(self, app, db_session, tenant_id):
        result = app.test_cli_runner().invoke(
            args=['branches', 'freeze', '--tenant-id', tenant_id, '--branch-id', str(uuid.uuid4())]
        )
        assert result.exit_code != 0

    def test_register_and_menu_bootstrap(self, app, db_session, tenant_id, branch):
        runner = app.test_cli_runner()

        result = runner.invoke(args=['registers', 'create', '--tenant-id', tenant_id, '--branch-id', branch.id,
                                     '--name', 'Front Counter'])
        assert result.exit_code == 0, result.output
        assert db_session.query(CashRegister).filter_by(branch_id=branch.id).count() == 1

        result = runner.invoke(args=['menu', 'add-item', '--tenant-id', tenant_id, '--name', 'Iced Coffee',
                                     '--price-usd', '1.50'])
        assert result.exit_code == 0, result.output
        assert db_session.query(MenuItem).filter_by(tenant_id=tenant_id).one().name == 'Iced Coffee'

    def test_outbox_dispatch_with_nothing_pending(self, app, db_session):
        result = app.test_cli_runner().invoke(args=['outbox', 'dispatch'])
        assert result.exit_code == 0, result.output
        assert 'PASS Dispatched: 0 sent, 0 failed' in result.output

    def test_sync_show_unknown_operation(self, app, db_session, tenant_id):
        result = app.test_cli_runner().invoke(
            args=['sync', 'show', '--tenant-id', tenant_id, '--client-op-id', str(uuid.uuid4())]
        )
        assert result.exit_code != 0
        assert 'Operation not found' in result.output

    def test_menu_set_availability_hides_item_from_sync(self, app, db_session, tenant_id, branch, coffee):
        result = app.test_cli_runner().invoke(
            args=['menu', 'set-availability', '--branch-id', branch.id, '--menu-item-id', coffee.id, '--unavailable']
        )
        assert result.exit_code == 0, result.output
        assert 'is unavailable' in result.output

        assert menu_service.get_menu_item(db_session, tenant_id, branch.id, coffee.id) is None

    def test_audit_list_and_sales_show(self, app, db_session, ctx, coffee):
        batch = SyncService().apply_batch(ctx, [make_op("SALE_FINALIZED", sale_payload((coffee.id, 1)))])
        sale_id = batch.results[0].result["saleId"]
        runner = app.test_cli_runner()

        result = runner.invoke(args=['audit', 'list', '--tenant-id', ctx.tenant_id, '--action', 'SALE_FINALIZED'])
        assert result.exit_code == 0, result.output
        assert f'SALE:{sale_id}' in result.output

        result = runner.invoke(args=['sales', 'show', '--tenant-id', ctx.tenant_id, '--sale-id', sale_id])
        assert result.exit_code == 0, result.output
        assert '"state": "finalized"' in result.output

        result = runner.invoke(args=['sales', 'show', '--tenant-id', str(uuid.uuid4()), '--sale-id', sale_id])
        assert result.exit_code != 0

    def test_cash_take_over_and_force_close(self, app, db_session, ctx):
        SyncService().apply_batch(ctx, [
            make_op("CASH_SESSION_OPENED", {"opening_float_usd": 100, "opening_float_khr": 0}),
        ])
        manager_id = str(uuid.uuid4())
        runner = app.test_cli_runner()

        result = runner.invoke(args=['cash', 'take-over', '--tenant-id', ctx.tenant_id, '--branch-id', ctx.branch_id,
                                     '--actor-id', manager_id, '--reason', 'Shift change', '--float-usd', '40'])
        assert result.exit_code == 0, result.output
        assert 'PASS Session taken over' in result.output
        new_session = db_session.query(CashSessionRecord).filter_by(status='OPEN').one()
        assert new_session.opened_by == manager_id

        result = runner.invoke(args=['cash', 'force-close', '--tenant-id', ctx.tenant_id, '--session-id', new_session.id,
                                     '--actor-id', manager_id, '--reason', 'End of day'])
        assert result.exit_code == 0, result.output
        assert 'is CLOSED' in result.output

        result = runner.invoke(args=['cash', 'take-over', '--tenant-id', ctx.tenant_id, '--branch-id', ctx.branch_id,
                                     '--actor-id', manager_id, '--reason', 'Shift change'])
        assert result.exit_code != 0
        assert 'No open session found to take over' in result.output

    def test_cash_paid_out_limit(self, app, db_session, ctx):
        batch = SyncService().apply_batch(ctx, [
            make_op("CASH_SESSION_OPENED", {"opening_float_usd": 1000, "opening_float_khr": 0}),
        ])
        session_id = batch.results[0].result["sessionId"]
        runner = app.test_cli_runner()
        args = ['cash', 'paid-out', '--tenant-id', ctx.tenant_id, '--session-id', session_id,
                '--actor-id', ctx.actor_id, '--amount-usd', '600', '--reason', 'Supplier invoice']

        result = runner.invoke(args=args)
        assert result.exit_code != 0
        assert 'Manager approval required' in result.output

        result = runner.invoke(args=args + ['--manager-approved'])
        assert result.exit_code == 0, result.output
        assert db_session.query(CashMovement).filter_by(type='PAID_OUT').count() == 1

        result = runner.invoke(args=['cash', 'paid-in', '--tenant-id', ctx.tenant_id, '--session-id', session_id,
                                     '--actor-id', ctx.actor_id, '--amount-usd', '25', '--reason', 'Change top-up'])
        assert result.exit_code == 0, result.output
        assert db_session.get(CashSessionRecord, session_id).expected_cash_usd == Decimal('425.00')
