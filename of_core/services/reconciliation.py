"""
银行流水导入与对账服务
匹配规则：金额完全相等，且（附言中包含订单号 或 银行流水号等于支付的网关交易号）
只有唯一候选时自动对账；多个候选或无候选时保持原状态等待人工处理
"""
import re
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional, Any, Tuple, Union

from sqlalchemy import select, update as sql_update
from sqlalchemy.ext.asyncio import AsyncSession

from of_core.models import (
    BankAccount, BankReconciliation, BankTransaction, Order, Payment
)
from of_core.models.base import utcnow
from of_core.models.enums import (
    BankTxnStatus, BankTxnType, PaymentStatus, ReconciliationOutcomeType
)
from of_core.utils.errors import (
    OrderFlowException, ValidationError, NotFoundError, ConflictError, InvalidTransitionError
)
from of_core.utils.money import money_equal, to_money
from .base import BaseService, ServiceResult, RepositoryMixin

# 可自动对账的流水状态
OPEN_TXN_STATUSES = (BankTxnStatus.PENDING.value, BankTxnStatus.POSTED.value)

# 不移动账户余额的流水状态
NON_BOOKING_STATUSES = (BankTxnStatus.FAILED.value, BankTxnStatus.CANCELLED.value)

# 匹配置信度
SCORE_GATEWAY_TXN_ID = 100
SCORE_ORDER_NUMBER = 90


class MatchKind(str, Enum):
    """自动对账结果"""

    MATCHED = "matched"
    AMBIGUOUS = "ambiguous"
    UNMATCHED = "unmatched"


@dataclass
class ReconciliationOutcome:
    """对账结果（带标签的变体，AMBIGUOUS 需人工处理）"""
    kind: MatchKind
    bank_txn_id: int
    reconciliation_id: Optional[int] = None
    payment_id: Optional[int] = None
    order_id: Optional[int] = None
    candidate_payment_ids: List[int] = field(default_factory=list)
    reason: Optional[str] = None

    @property
    def needs_review(self) -> bool:
        return self.kind != MatchKind.MATCHED

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind.value,
            "bank_txn_id": self.bank_txn_id,
            "reconciliation_id": self.reconciliation_id,
            "payment_id": self.payment_id,
            "order_id": self.order_id,
            "candidate_payment_ids": list(self.candidate_payment_ids),
            "reason": self.reason,
        }


class ReconciliationService(BaseService, RepositoryMixin):
    """银行流水与对账服务"""

    def __init__(self, db_manager=None):
        super().__init__(db_manager)
        prefix = re.escape(self.db_manager.settings.order_number_prefix)
        # 银行附言常去掉连字符，两种写法都识别
        self._order_number_re = re.compile(
            rf"(?<![A-Z0-9]){prefix}-?(\d{{13}})-?([A-Z0-9]{{9}})(?![A-Z0-9])",
            re.IGNORECASE
        )
        self._prefix = self.db_manager.settings.order_number_prefix

    def extract_order_numbers(self, description: Optional[str]) -> List[str]:
        """从银行附言中提取订单号（规范化为 PREFIX-毫秒-随机码）"""
        if not description:
            return []
        numbers = []
        for millis, suffix in self._order_number_re.findall(description):
            number = f"{self._prefix}-{millis}-{suffix.upper()}"
            if number not in numbers:
                numbers.append(number)
        return numbers

    # ---- 账户 ----

    async def create_account(
        self,
        bank_name: str,
        account_number: str,
        account_name: Optional[str] = None,
        currency: Optional[str] = None
    ) -> ServiceResult[Dict[str, Any]]:
        """登记银行账户（余额从 0 开始，只随流水变化）"""
        try:
            self.validate_required_fields(
                {"bank_name": bank_name, "account_number": account_number},
                ["bank_name", "account_number"]
            )
            account = await self.execute_with_transaction(
                self._create_account_tx, bank_name, account_number, account_name, currency
            )
            return ServiceResult.ok(account.to_dict())
        except OrderFlowException as e:
            return self.fail(e, "Create bank account", account_number=account_number)

    async def _create_account_tx(
        self,
        session: AsyncSession,
        bank_name: str,
        account_number: str,
        account_name: Optional[str],
        currency: Optional[str]
    ) -> BankAccount:
        if await self.exists(session, BankAccount, account_number=account_number):
            raise ConflictError(
                code="BANK_ACCOUNT_EXISTS",
                detail=f"Bank account {account_number} is already registered"
            )
        return await self.create(session, BankAccount, {
            "bank_name": bank_name,
            "account_number": account_number,
            "account_name": account_name,
            "currency": currency or self.db_manager.settings.default_currency,
            "balance": to_money(0),
        })

    # ---- 导入 ----

    async def ingest_transaction(
        self,
        account_id: int,
        external_txn_id: str,
        txn_type: Union[BankTxnType, str],
        amount: Any,
        description: Optional[str] = None,
        posted_at: Optional[datetime] = None,
        status: Union[BankTxnStatus, str] = BankTxnStatus.POSTED,
        currency: Optional[str] = None,
        actor_id: Optional[int] = None
    ) -> ServiceResult[Dict[str, Any]]:
        """导入一条银行流水并尝试自动对账（同一事务）"""
        try:
            data = self._validate_bank_txn(external_txn_id, txn_type, amount, status)
            result = await self.execute_with_transaction(
                self._ingest_transaction_tx,
                account_id, data, description, posted_at, currency, actor_id
            )
            return ServiceResult.ok(result, metadata={"duplicate": result["duplicate"]})
        except OrderFlowException as e:
            return self.fail(e, "Bank transaction ingest", account_id=account_id, external_txn_id=external_txn_id)

    def _validate_bank_txn(
        self,
        external_txn_id: str,
        txn_type: Union[BankTxnType, str],
        amount: Any,
        status: Union[BankTxnStatus, str]
    ) -> Dict[str, Any]:
        """验证流水数据"""
        if not external_txn_id or not str(external_txn_id).strip():
            raise ValidationError(code="MISSING_EXTERNAL_TXN_ID", detail="External transaction id is required")

        try:
            txn_type = BankTxnType(txn_type)
        except ValueError:
            raise ValidationError(code="INVALID_TXN_TYPE", detail=f"Unknown bank transaction type: {txn_type}")

        try:
            status = BankTxnStatus(status)
        except ValueError:
            raise ValidationError(code="INVALID_TXN_STATUS", detail=f"Unknown bank transaction status: {status}")
        if status == BankTxnStatus.RECONCILED:
            raise ValidationError(
                code="INVALID_TXN_STATUS",
                detail="Transactions cannot be ingested as reconciled"
            )

        try:
            amount = to_money(amount)
        except ValueError as e:
            raise ValidationError(code="INVALID_TXN_AMOUNT", detail=str(e))
        if amount <= 0:
            raise ValidationError(code="INVALID_TXN_AMOUNT", detail=f"Amount must be positive, got: {amount}")

        return {
            "external_txn_id": str(external_txn_id).strip(),
            "txn_type": txn_type,
            "amount": amount,
            "status": status,
        }

    async def _ingest_transaction_tx(
        self,
        session: AsyncSession,
        account_id: int,
        data: Dict[str, Any],
        description: Optional[str],
        posted_at: Optional[datetime],
        currency: Optional[str],
        actor_id: Optional[int]
    ) -> Dict[str, Any]:
        """事务中的流水导入逻辑"""
        account = await self.get_by_id(session, BankAccount, account_id, for_update=True)
        if account is None:
            raise NotFoundError(code="BANK_ACCOUNT_NOT_FOUND", resource=f"Bank account {account_id}")

        # 重复导入幂等：返回已有流水，不再移动余额
        existing = await self._find_by_external_id(session, account_id, data["external_txn_id"])
        if existing is not None:
            self.logger.info(
                "Duplicate bank transaction ignored",
                account_id=account_id,
                external_txn_id=data["external_txn_id"],
                bank_txn_id=existing.id
            )
            return {"transaction": existing.to_dict(), "duplicate": True, "outcome": None}

        signed = self._signed_amount(data["txn_type"], data["amount"])
        if data["status"].value in NON_BOOKING_STATUSES:
            signed = to_money(0)

        await session.execute(
            sql_update(BankAccount)
            .where(BankAccount.id == account_id)
            .values(balance=BankAccount.balance + signed)
            .execution_options(synchronize_session=False)
        )
        balance_after = to_money((await session.execute(
            select(BankAccount.balance).where(BankAccount.id == account_id)
        )).scalar_one())

        txn = await self.create(session, BankTransaction, {
            "account_id": account_id,
            "external_txn_id": data["external_txn_id"],
            "txn_type": data["txn_type"].value,
            "amount": data["amount"],
            "currency": currency or account.currency,
            "description": description,
            "status": data["status"].value,
            "balance_before": balance_after - signed,
            "balance_after": balance_after,
            "posted_at": posted_at or utcnow(),
            "created_by": actor_id,
        })

        self.logger.info(
            "Bank transaction ingested",
            account_id=account_id,
            bank_txn_id=txn.id,
            txn_type=txn.txn_type,
            amount=str(txn.amount)
        )

        outcome = await self._match_tx(session, txn)
        return {"transaction": txn.to_dict(), "duplicate": False, "outcome": outcome.to_dict()}

    def _signed_amount(self, txn_type: BankTxnType, amount):
        """入账为正，其余为负"""
        return amount if txn_type == BankTxnType.CREDIT else -amount

    async def _find_by_external_id(
        self,
        session: AsyncSession,
        account_id: int,
        external_txn_id: str
    ) -> Optional[BankTransaction]:
        stmt = select(BankTransaction).where(
            BankTransaction.account_id == account_id,
            BankTransaction.external_txn_id == external_txn_id
        )
        result = await session.execute(stmt)
        return result.scalar_one_or_none()

    # ---- 自动对账 ----

    async def reconcile(self, bank_txn_id: int) -> ServiceResult[ReconciliationOutcome]:
        """对已导入的流水重新执行自动匹配"""
        try:
            outcome = await self.execute_with_transaction(self._reconcile_tx, bank_txn_id)
            return ServiceResult.ok(outcome)
        except OrderFlowException as e:
            return self.fail(e, "Bank reconciliation", bank_txn_id=bank_txn_id)

    async def _reconcile_tx(self, session: AsyncSession, bank_txn_id: int) -> ReconciliationOutcome:
        txn = await self._get_txn_for_update(session, bank_txn_id)
        return await self._match_tx(session, txn)

    async def _match_tx(self, session: AsyncSession, txn: BankTransaction) -> ReconciliationOutcome:
        """匹配核心逻辑：不猜测，多个候选时不写入"""
        existing = await self.get_by_field(session, BankReconciliation, "bank_txn_id", txn.id)
        if existing is not None:
            kind = MatchKind.UNMATCHED if existing.outcome == ReconciliationOutcomeType.MISMATCH.value else MatchKind.MATCHED
            return ReconciliationOutcome(
                kind=kind,
                bank_txn_id=txn.id,
                reconciliation_id=existing.id,
                payment_id=existing.payment_id,
                order_id=existing.order_id,
                reason=f"already_{existing.outcome}"
            )

        if txn.txn_type != BankTxnType.CREDIT.value:
            return ReconciliationOutcome(kind=MatchKind.UNMATCHED, bank_txn_id=txn.id, reason="not_incoming")

        if txn.status not in OPEN_TXN_STATUSES:
            return ReconciliationOutcome(kind=MatchKind.UNMATCHED, bank_txn_id=txn.id, reason=f"status_{txn.status}")

        candidates = await self._find_candidates(session, txn)

        if not candidates:
            self.logger.info("Bank transaction unmatched", bank_txn_id=txn.id)
            return ReconciliationOutcome(kind=MatchKind.UNMATCHED, bank_txn_id=txn.id, reason="no_candidate")

        if len(candidates) > 1:
            candidate_ids = sorted(candidates)
            self.logger.warning(
                "Ambiguous bank transaction left for manual review",
                bank_txn_id=txn.id,
                candidate_payment_ids=candidate_ids
            )
            return ReconciliationOutcome(
                kind=MatchKind.AMBIGUOUS,
                bank_txn_id=txn.id,
                candidate_payment_ids=candidate_ids,
                reason="multiple_candidates"
            )

        payment, score = next(iter(candidates.values()))
        reconciliation = await self._link_tx(
            session, txn, payment,
            outcome=ReconciliationOutcomeType.MATCHED,
            matched_by="auto",
            match_score=score
        )
        self.logger.info(
            "Bank transaction reconciled",
            bank_txn_id=txn.id,
            payment_id=payment.id,
            order_id=payment.order_id,
            match_score=score
        )
        return ReconciliationOutcome(
            kind=MatchKind.MATCHED,
            bank_txn_id=txn.id,
            reconciliation_id=reconciliation.id,
            payment_id=payment.id,
            order_id=payment.order_id,
            candidate_payment_ids=[payment.id]
        )

    async def _find_candidates(
        self,
        session: AsyncSession,
        txn: BankTransaction
    ) -> Dict[int, Tuple[Payment, int]]:
        """候选支付：网关交易号相同，或附言中的订单号对应的支付；金额必须完全一致"""
        scored: Dict[int, Tuple[Payment, int]] = {}

        by_gateway = await session.execute(
            select(Payment).where(Payment.gateway_transaction_id == txn.external_txn_id)
        )
        for payment in by_gateway.scalars().all():
            scored[payment.id] = (payment, SCORE_GATEWAY_TXN_ID)

        order_numbers = self.extract_order_numbers(txn.description)
        if order_numbers:
            by_order = await session.execute(
                select(Payment)
                .join(Order, Order.id == Payment.order_id)
                .where(Order.order_number.in_(order_numbers))
            )
            for payment in by_order.scalars().all():
                scored.setdefault(payment.id, (payment, SCORE_ORDER_NUMBER))

        candidates = {}
        for payment_id, (payment, score) in scored.items():
            if payment.status in (PaymentStatus.FAILED.value, PaymentStatus.VOID.value):
                continue
            if not money_equal(payment.amount, txn.amount):
                continue
            if await self._payment_linked(session, payment_id):
                continue
            candidates[payment_id] = (payment, score)
        return candidates

    async def _payment_linked(self, session: AsyncSession, payment_id: int) -> bool:
        """支付是否已与某条流水对账"""
        stmt = select(BankReconciliation.id).where(
            BankReconciliation.payment_id == payment_id,
            BankReconciliation.outcome.in_([
                ReconciliationOutcomeType.MATCHED.value,
                ReconciliationOutcomeType.MANUAL.value,
            ])
        ).limit(1)
        return (await session.execute(stmt)).scalar_one_or_none() is not None

    async def _link_tx(
        self,
        session: AsyncSession,
        txn: BankTransaction,
        payment: Payment,
        outcome: ReconciliationOutcomeType,
        matched_by: str,
        match_score: Optional[int] = None,
        notes: Optional[str] = None
    ) -> BankReconciliation:
        """写入对账记录，并把流水标记为 reconciled"""
        result = await session.execute(
            sql_update(BankTransaction)
            .where(
                BankTransaction.id == txn.id,
                BankTransaction.status.in_(OPEN_TXN_STATUSES + (BankTxnStatus.RECONCILED.value,))
            )
            .values(
                status=BankTxnStatus.RECONCILED.value,
                related_order_id=payment.order_id,
                related_payment_id=payment.id
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise InvalidTransitionError(
                detail=f"Bank transaction {txn.id} is {txn.status} and cannot be reconciled",
                code="BANK_TXN_NOT_RECONCILABLE",
                current_status=txn.status,
                action="reconcile"
            )
        await session.refresh(txn)

        return await self.create(session, BankReconciliation, {
            "bank_txn_id": txn.id,
            "order_id": payment.order_id,
            "payment_id": payment.id,
            "outcome": outcome.value,
            "matched_by": matched_by,
            "match_score": match_score,
            "notes": notes,
        })

    # ---- 人工处理 ----

    async def resolve_manually(
        self,
        bank_txn_id: int,
        payment_id: int,
        actor_id: int,
        notes: Optional[str] = None
    ) -> ServiceResult[Dict[str, Any]]:
        """人工指定流水对应的支付（可覆盖已有对账结果）"""
        try:
            reconciliation = await self.execute_with_transaction(
                self._resolve_manually_tx, bank_txn_id, payment_id, actor_id, notes
            )
            return ServiceResult.ok(reconciliation.to_dict())
        except OrderFlowException as e:
            return self.fail(e, "Manual reconciliation", bank_txn_id=bank_txn_id, payment_id=payment_id)

    async def _resolve_manually_tx(
        self,
        session: AsyncSession,
        bank_txn_id: int,
        payment_id: int,
        actor_id: int,
        notes: Optional[str]
    ) -> BankReconciliation:
        txn = await self._get_txn_for_update(session, bank_txn_id)
        payment = await self.get_by_id(session, Payment, payment_id, for_update=True)
        if payment is None:
            raise NotFoundError(code="PAYMENT_NOT_FOUND", resource=f"Payment {payment_id}")

        linked = await session.execute(
            select(BankReconciliation).where(
                BankReconciliation.payment_id == payment_id,
                BankReconciliation.bank_txn_id != bank_txn_id,
                BankReconciliation.outcome.in_([
                    ReconciliationOutcomeType.MATCHED.value,
                    ReconciliationOutcomeType.MANUAL.value,
                ])
            )
        )
        other = linked.scalars().first()
        if other is not None:
            raise ConflictError(
                code="PAYMENT_ALREADY_RECONCILED",
                detail=f"Payment {payment_id} is already reconciled with bank transaction {other.bank_txn_id}"
            )

        if not money_equal(payment.amount, txn.amount):
            self.logger.warning(
                "Manual reconciliation with differing amounts",
                bank_txn_id=bank_txn_id,
                payment_id=payment_id,
                txn_amount=str(txn.amount),
                payment_amount=str(payment.amount)
            )

        existing = await self.get_by_field(session, BankReconciliation, "bank_txn_id", bank_txn_id)
        if existing is None:
            reconciliation = await self._link_tx(
                session, txn, payment,
                outcome=ReconciliationOutcomeType.MANUAL,
                matched_by=str(actor_id),
                notes=notes
            )
        else:
            # 唯一允许的修改：人工覆盖
            await self._mark_txn_reconciled(session, txn, payment)
            existing.outcome = ReconciliationOutcomeType.MANUAL.value
            existing.payment_id = payment.id
            existing.order_id = payment.order_id
            existing.matched_by = str(actor_id)
            existing.match_score = None
            existing.notes = notes
            existing.matched_at = utcnow()
            await session.flush()
            reconciliation = existing

        self.logger.info(
            "Bank transaction manually reconciled",
            bank_txn_id=bank_txn_id,
            payment_id=payment_id,
            actor_id=actor_id
        )
        return reconciliation

    async def _mark_txn_reconciled(self, session: AsyncSession, txn: BankTransaction, payment: Payment) -> None:
        if txn.status in NON_BOOKING_STATUSES:
            raise InvalidTransitionError(
                detail=f"Bank transaction {txn.id} is {txn.status} and cannot be reconciled",
                code="BANK_TXN_NOT_RECONCILABLE",
                current_status=txn.status,
                action="reconcile"
            )
        txn.status = BankTxnStatus.RECONCILED.value
        txn.related_order_id = payment.order_id
        txn.related_payment_id = payment.id
        await session.flush()

    async def flag_mismatch(
        self,
        bank_txn_id: int,
        actor_id: int,
        notes: str
    ) -> ServiceResult[Dict[str, Any]]:
        """人工标记流水无法对应任何支付"""
        try:
            if not notes or not notes.strip():
                raise ValidationError(code="MISSING_NOTES", detail="A note is required when flagging a mismatch")
            reconciliation = await self.execute_with_transaction(
                self._flag_mismatch_tx, bank_txn_id, actor_id, notes.strip()
            )
            return ServiceResult.ok(reconciliation.to_dict())
        except OrderFlowException as e:
            return self.fail(e, "Flag mismatch", bank_txn_id=bank_txn_id)

    async def _flag_mismatch_tx(
        self,
        session: AsyncSession,
        bank_txn_id: int,
        actor_id: int,
        notes: str
    ) -> BankReconciliation:
        txn = await self._get_txn_for_update(session, bank_txn_id)
        existing = await self.get_by_field(session, BankReconciliation, "bank_txn_id", bank_txn_id)
        if existing is not None and existing.outcome != ReconciliationOutcomeType.MISMATCH.value:
            raise ConflictError(
                code="BANK_TXN_ALREADY_RECONCILED",
                detail=f"Bank transaction {bank_txn_id} is already reconciled; resolve it manually instead"
            )
        if existing is not None:
            existing.matched_by = str(actor_id)
            existing.notes = notes
            existing.matched_at = utcnow()
            await session.flush()
            return existing

        reconciliation = await self.create(session, BankReconciliation, {
            "bank_txn_id": txn.id,
            "outcome": ReconciliationOutcomeType.MISMATCH.value,
            "matched_by": str(actor_id),
            "notes": notes,
        })
        self.logger.info("Bank transaction flagged as mismatch", bank_txn_id=bank_txn_id, actor_id=actor_id)
        return reconciliation

    async def _get_txn_for_update(self, session: AsyncSession, bank_txn_id: int) -> BankTransaction:
        txn = await self.get_by_id(session, BankTransaction, bank_txn_id, for_update=True)
        if txn is None:
            raise NotFoundError(code="BANK_TXN_NOT_FOUND", resource=f"Bank transaction {bank_txn_id}")
        return txn

    # ---- 查询 ----

    async def list_unreconciled(self, account_id: Optional[int] = None) -> ServiceResult[List[Dict[str, Any]]]:
        """待人工处理的流水：未对账且未被标记为不符"""
        try:
            txns = await self.execute_with_session(self._list_unreconciled_query, account_id)
            return ServiceResult.ok(txns)
        except OrderFlowException as e:
            return self.fail(e, "List unreconciled", account_id=account_id)

    async def _list_unreconciled_query(self, session: AsyncSession, account_id: Optional[int]) -> List[Dict[str, Any]]:
        reviewed = select(BankReconciliation.bank_txn_id)
        stmt = (
            select(BankTransaction)
            .where(
                BankTransaction.status.in_(OPEN_TXN_STATUSES),
                BankTransaction.id.not_in(reviewed)
            )
            .order_by(BankTransaction.posted_at, BankTransaction.id)
        )
        if account_id is not None:
            stmt = stmt.where(BankTransaction.account_id == account_id)
        result = await session.execute(stmt)
        return [txn.to_dict() for txn in result.scalars().all()]

    async def get_reconciliations_for_order(self, order_id: int) -> ServiceResult[List[Dict[str, Any]]]:
        """订单的对账记录"""
        try:
            rows = await self.execute_with_session(
                self.get_many_by_field, BankReconciliation, "order_id", order_id
            )
            return ServiceResult.ok([row.to_dict() for row in rows])
        except OrderFlowException as e:
            return self.fail(e, "Order reconciliations", order_id=order_id)

    async def has_settled_reconciliation_tx(self, session: AsyncSession, order_id: int) -> bool:
        """订单是否存在自动匹配或人工确认的对账记录"""
        stmt = select(BankReconciliation.id).where(
            BankReconciliation.order_id == order_id,
            BankReconciliation.outcome.in_([
                ReconciliationOutcomeType.MATCHED.value,
                ReconciliationOutcomeType.MANUAL.value,
            ])
        ).limit(1)
        return (await session.execute(stmt)).scalar_one_or_none() is not None
