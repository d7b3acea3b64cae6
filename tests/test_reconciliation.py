"""
银行流水导入与对账测试
"""
from decimal import Decimal

from sqlalchemy import select

from of_core.models import BankAccount, BankReconciliation
from of_core.services import MatchKind


async def _bank_transfer_order(place_order, amount="250000"):
    return await place_order(payment_method="bank_transfer", price=amount)


class TestIngest:

    async def test_credit_and_debit_move_balance(self, reconciliation, bank_account, db_session):
        credit = await reconciliation.ingest_transaction(bank_account, "FT001", "credit", "500000", description="top up")
        debit = await reconciliation.ingest_transaction(bank_account, "FT002", "fee", "11000")

        assert credit.success and debit.success
        assert Decimal(credit.data["transaction"]["balance_before"]) == Decimal("0")
        assert Decimal(credit.data["transaction"]["balance_after"]) == Decimal("500000")
        assert Decimal(debit.data["transaction"]["balance_before"]) == Decimal("500000")
        assert Decimal(debit.data["transaction"]["balance_after"]) == Decimal("489000")
        account = await db_session.get(BankAccount, bank_account)
        assert Decimal(account.balance) == Decimal("489000")

    async def test_duplicate_import_is_idempotent(self, reconciliation, bank_account, db_session):
        first = await reconciliation.ingest_transaction(bank_account, "FT100", "credit", "100000")
        again = await reconciliation.ingest_transaction(bank_account, "FT100", "credit", "100000")

        assert again.success
        assert again.metadata["duplicate"] is True
        assert again.data["transaction"]["id"] == first.data["transaction"]["id"]
        account = await db_session.get(BankAccount, bank_account)
        assert Decimal(account.balance) == Decimal("100000")

    async def test_invalid_input(self, reconciliation, bank_account):
        negative = await reconciliation.ingest_transaction(bank_account, "FT1", "credit", "-5")
        unknown_type = await reconciliation.ingest_transaction(bank_account, "FT2", "gift", "5")
        no_account = await reconciliation.ingest_transaction(404, "FT3", "credit", "5")

        assert negative.error_code == "INVALID_TXN_AMOUNT"
        assert unknown_type.error_code == "INVALID_TXN_TYPE"
        assert no_account.error_code == "BANK_ACCOUNT_NOT_FOUND"

    async def test_create_account_rejects_duplicates(self, reconciliation, bank_account):
        result = await reconciliation.create_account("Vietcombank", "0071000123456")
        assert result.error_code == "BANK_ACCOUNT_EXISTS"


class TestMatcher:

    async def test_order_number_in_description_matches(self, reconciliation, place_order, bank_account, payments):
        order = await _bank_transfer_order(place_order)

        result = await reconciliation.ingest_transaction(
            bank_account, "FT200", "credit", order["total_amount"],
            description=f"CK thanh toan {order['order_number']}",
        )

        outcome = result.data["outcome"]
        assert outcome["kind"] == MatchKind.MATCHED.value
        assert outcome["order_id"] == order["id"]
        assert outcome["payment_id"] == order["payment"]["id"]
        assert result.data["transaction"]["status"] == "reconciled"
        assert result.data["transaction"]["related_order_id"] == order["id"]

        rows = await reconciliation.get_reconciliations_for_order(order["id"])
        assert len(rows.data) == 1
        assert rows.data[0]["outcome"] == "matched"
        assert rows.data[0]["matched_by"] == "auto"

    async def test_order_number_without_hyphens_matches(self, reconciliation, place_order, bank_account):
        order = await _bank_transfer_order(place_order)
        squashed = order["order_number"].replace("-", "").lower()

        result = await reconciliation.ingest_transaction(
            bank_account, "FT201", "credit", order["total_amount"], description=f"thanh toan {squashed}",
        )

        assert result.data["outcome"]["kind"] == "matched"

    async def test_gateway_transaction_id_matches(self, reconciliation, place_order, bank_account, payments):
        order = await _bank_transfer_order(place_order)
        await payments.mark_paid(order["payment"]["id"], external_txn_id="FT300")

        result = await reconciliation.ingest_transaction(
            bank_account, "FT300", "credit", order["total_amount"], description="no reference",
        )

        assert result.data["outcome"]["kind"] == "matched"
        assert result.data["outcome"]["payment_id"] == order["payment"]["id"]

    async def test_amount_mismatch_is_unmatched(self, reconciliation, place_order, bank_account):
        order = await _bank_transfer_order(place_order)

        result = await reconciliation.ingest_transaction(
            bank_account, "FT400", "credit", "1",
            description=order["order_number"],
        )

        assert result.data["outcome"]["kind"] == MatchKind.UNMATCHED.value
        assert result.data["transaction"]["status"] == "posted"
        assert result.data["transaction"]["related_order_id"] is None

    async def test_two_candidates_are_ambiguous(self, reconciliation, place_order, bank_account, db_session):
        first = await _bank_transfer_order(place_order, amount="99000")
        second = await _bank_transfer_order(place_order, amount="99000")

        result = await reconciliation.ingest_transaction(
            bank_account, "FT500", "credit", "99000",
            description=f"{first['order_number']} {second['order_number']}",
        )

        outcome = result.data["outcome"]
        assert outcome["kind"] == MatchKind.AMBIGUOUS.value
        assert sorted(outcome["candidate_payment_ids"]) == sorted(
            [first["payment"]["id"], second["payment"]["id"]]
        )
        assert result.data["transaction"]["status"] == "posted"
        rows = (await db_session.execute(select(BankReconciliation))).scalars().all()
        assert rows == []

        unreconciled = await reconciliation.list_unreconciled(bank_account)
        assert [t["external_txn_id"] for t in unreconciled.data] == ["FT500"]

    async def test_debits_are_never_matched(self, reconciliation, place_order, bank_account):
        order = await _bank_transfer_order(place_order)
        await reconciliation.ingest_transaction(bank_account, "FT600", "credit", "1000000")

        result = await reconciliation.ingest_transaction(
            bank_account, "FT601", "debit", order["total_amount"], description=order["order_number"],
        )

        assert result.data["outcome"]["kind"] == "unmatched"
        assert result.data["outcome"]["reason"] == "not_incoming"

    async def test_payment_is_linked_only_once(self, reconciliation, place_order, bank_account):
        order = await _bank_transfer_order(place_order)
        await reconciliation.ingest_transaction(
            bank_account, "FT700", "credit", order["total_amount"], description=order["order_number"],
        )

        repeat = await reconciliation.ingest_transaction(
            bank_account, "FT701", "credit", order["total_amount"], description=order["order_number"],
        )

        assert repeat.data["outcome"]["kind"] == "unmatched"

    async def test_void_payments_are_skipped(self, reconciliation, orders, place_order, bank_account):
        order = await _bank_transfer_order(place_order)
        await orders.cancel(order["id"], actor_id=7)

        result = await reconciliation.ingest_transaction(
            bank_account, "FT800", "credit", order["total_amount"], description=order["order_number"],
        )

        assert result.data["outcome"]["kind"] == "unmatched"


class TestManualResolution:

    async def test_resolve_ambiguous_manually(self, reconciliation, place_order, bank_account):
        first = await _bank_transfer_order(place_order, amount="99000")
        second = await _bank_transfer_order(place_order, amount="99000")
        ingested = await reconciliation.ingest_transaction(
            bank_account, "FT900", "credit", "99000",
            description=f"{first['order_number']} {second['order_number']}",
        )
        txn_id = ingested.data["transaction"]["id"]

        resolved = await reconciliation.resolve_manually(txn_id, second["payment"]["id"], actor_id=55, notes="phone call")

        assert resolved.success
        assert resolved.data["outcome"] == "manual"
        assert resolved.data["order_id"] == second["id"]
        assert resolved.data["matched_by"] == "55"
        assert (await reconciliation.list_unreconciled()).data == []

        rerun = await reconciliation.reconcile(txn_id)
        assert rerun.data.kind == MatchKind.MATCHED
        assert rerun.data.payment_id == second["payment"]["id"]

    async def test_manual_override_replaces_auto_match(self, reconciliation, place_order, bank_account):
        first = await _bank_transfer_order(place_order, amount="120000")
        second = await _bank_transfer_order(place_order, amount="120000")
        ingested = await reconciliation.ingest_transaction(
            bank_account, "FT901", "credit", "120000", description=first["order_number"],
        )
        txn_id = ingested.data["transaction"]["id"]
        assert ingested.data["outcome"]["order_id"] == first["id"]

        resolved = await reconciliation.resolve_manually(txn_id, second["payment"]["id"], actor_id=55)

        assert resolved.data["order_id"] == second["id"]
        assert (await reconciliation.get_reconciliations_for_order(first["id"])).data == []

    async def test_flag_mismatch_removes_from_queue(self, reconciliation, bank_account):
        ingested = await reconciliation.ingest_transaction(bank_account, "FT902", "credit", "777000")
        txn_id = ingested.data["transaction"]["id"]

        flagged = await reconciliation.flag_mismatch(txn_id, actor_id=55, notes="customer refund")

        assert flagged.data["outcome"] == "mismatch"
        assert (await reconciliation.list_unreconciled()).data == []
        rerun = await reconciliation.reconcile(txn_id)
        assert rerun.data.kind == MatchKind.UNMATCHED
        assert rerun.data.reason == "already_mismatch"

    async def test_flag_mismatch_requires_notes(self, reconciliation, bank_account):
        ingested = await reconciliation.ingest_transaction(bank_account, "FT903", "credit", "1000")
        result = await reconciliation.flag_mismatch(ingested.data["transaction"]["id"], actor_id=55, notes=" ")
        assert result.error_code == "MISSING_NOTES"
