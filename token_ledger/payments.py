"""
Payment Allocation Module

Waterfall allocation of cash payments over a target's outstanding
installments, oldest due date first, with an optional penalty waiver budget.
Every allocation is one atomic unit under the target's lock; the collector's
ledger credit follows after commit on a best-effort basis.
"""

from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Dict, List, Optional, Sequence, Tuple
import uuid

from .audit import AuditTrail, AuditEventType
from .currency import Money, Currency, min_money
from .errors import (
    InvalidAmount, NoOutstandingInstallments, TargetAlreadyClosed, TargetNotFound
)
from .ledger import ActorRef
from .locks import KeyedLockManager
from .logging_config import get_logger, log_action
from .schedule import (
    Installment, InstallmentStatus, ScheduleStore, TargetType, next_status, target_key
)
from .storage import StorageInterface, StorageRecord
from .tokens import Target, TokenManager, TokenState


class PaymentMode(Enum):
    CASH = "cash"
    UPI = "upi"
    BANK_TRANSFER = "bank_transfer"


@dataclass
class PaymentRecord(StorageRecord):
    """Immutable header of one received payment"""
    amount: Money
    amount_applied: Money
    amount_unapplied: Money
    penalty_waived: Money
    payment_mode: PaymentMode
    payment_date: date
    recorded_by: str
    target_type: Optional[TargetType] = None   # None for multi-token payments
    target_id: Optional[str] = None
    customer_id: Optional[str] = None
    remarks: Optional[str] = None


@dataclass
class PaymentAllocation(StorageRecord):
    """Portion of a payment applied to one installment"""
    payment_id: str
    installment_id: str
    target_type: TargetType
    target_id: str
    amount: Money
    penalty_waived: Money


@dataclass
class AllocationResult:
    """Outcome of one allocator call"""
    payment: PaymentRecord
    allocations: List[PaymentAllocation]
    updated_installments: List[Installment]
    amount_applied: Money
    amount_unapplied: Money
    closed: bool
    closed_targets: List[str] = field(default_factory=list)
    ledger_credited: Optional[bool] = None  # None when the ledger is not configured

    def to_dict(self) -> Dict:
        return {
            'payment_id': self.payment.id,
            'amount': str(self.payment.amount.amount),
            'amount_applied': str(self.amount_applied.amount),
            'amount_unapplied': str(self.amount_unapplied.amount),
            'penalty_waived': str(self.payment.penalty_waived.amount),
            'closed': self.closed,
            'closed_targets': list(self.closed_targets),
            'ledger_credited': self.ledger_credited,
            'allocations': [
                {
                    'installment_id': a.installment_id,
                    'target': target_key(a.target_type, a.target_id),
                    'amount': str(a.amount.amount),
                    'penalty_waived': str(a.penalty_waived.amount),
                }
                for a in self.allocations
            ],
            'installments': [
                {
                    'id': i.id,
                    'due_date': i.due_date.isoformat(),
                    'paid_amount': str(i.paid_amount.amount),
                    'penalty_waived': str(i.penalty_waived.amount),
                    'total_due': str(i.total_due.amount),
                    'status': i.status.value,
                }
                for i in self.updated_installments
            ],
        }


@dataclass
class _Walk:
    """Running state of one waterfall"""
    allocations: List[PaymentAllocation]
    installments: List[Installment]
    applied: Money
    waived: Money
    remaining: Money


class PaymentAllocator:
    """
    Distributes incoming cash over outstanding installments
    """

    def __init__(
        self,
        storage: StorageInterface,
        schedule_store: ScheduleStore,
        token_manager: TokenManager,
        locks: KeyedLockManager,
        audit_trail: AuditTrail,
        transfers=None,
        currency: Currency = Currency.INR
    ):
        self.storage = storage
        self.schedule_store = schedule_store
        self.token_manager = token_manager
        self.locks = locks
        self.audit_trail = audit_trail
        self.transfers = transfers  # None when the ledger capability is disabled
        self.currency = currency
        self.payments_table = "payments"
        self.allocations_table = "payment_allocations"
        self.logger = get_logger("token_ledger.payments")

    def _validate_cash(self, amount: Money, label: str = "Payment amount") -> None:
        if not isinstance(amount, Money) or not amount.is_positive():
            raise InvalidAmount(f"{label} must be positive, got {amount}", {"amount": amount})
        if amount.currency != self.currency:
            raise InvalidAmount(
                f"{label} must be in {self.currency.code}, got {amount.currency.code}",
                {"amount": amount}
            )

    def _open_target(self, target_type: TargetType, target_id: str) -> Tuple[Target, List[Installment]]:
        target = self.token_manager.require_target(target_type, target_id)
        if target.state == TokenState.CLOSED:
            raise TargetAlreadyClosed(
                f"{target_key(target_type, target_id)} is closed",
                {"target_id": target_id, "state": target.state.value}
            )
        outstanding = self.schedule_store.get_outstanding(target_type, target_id)
        if not outstanding:
            raise NoOutstandingInstallments(
                f"{target_key(target_type, target_id)} has no outstanding installments",
                {"target_id": target_id, "state": target.state.value}
            )
        return target, outstanding

    def allocate(
        self,
        target_type: TargetType,
        target_id: str,
        cash_amount: Money,
        payment_date: date,
        recorded_by: ActorRef,
        penalty_waiver_budget: Optional[Money] = None,
        payment_mode: PaymentMode = PaymentMode.CASH,
        remarks: Optional[str] = None
    ) -> AllocationResult:
        """
        Apply a cash payment to a token or batch.

        Args:
            target_type: TOKEN or BATCH
            target_id: Token or batch id
            cash_amount: Cash received, must be positive
            payment_date: Business date of the payment; drives status recompute
            recorded_by: Actor who took the cash; their ledger account is credited
            penalty_waiver_budget: Penalty the collector may forgive, spent oldest first
            payment_mode: How the cash was received
            remarks: Free text stored on the payment record

        Returns:
            AllocationResult with the payment, its allocations and updated rows

        Raises:
            InvalidAmount: cash_amount <= 0 or negative waiver budget
            TargetNotFound, TargetAlreadyClosed, NoOutstandingInstallments
            ConcurrencyConflict: target lock or transaction not obtained in time
        """
        self._validate_cash(cash_amount)
        waiver_budget = penalty_waiver_budget or Money.zero(self.currency)
        if waiver_budget.is_negative() or waiver_budget.currency != self.currency:
            raise InvalidAmount(f"Penalty waiver budget must be >= 0, got {waiver_budget}",
                                {"penalty_waiver_budget": waiver_budget})

        key = target_key(target_type, target_id)
        now = datetime.now(timezone.utc)

        with self.locks.hold(key), self.storage.atomic():
            target, outstanding = self._open_target(target_type, target_id)
            payment_id = str(uuid.uuid4())
            walk = self._apply_waterfall(payment_id, outstanding, cash_amount, waiver_budget,
                                         payment_date, now)

            payment = PaymentRecord(
                id=payment_id,
                created_at=now,
                updated_at=now,
                amount=cash_amount,
                amount_applied=walk.applied,
                amount_unapplied=walk.remaining,
                penalty_waived=walk.waived,
                payment_mode=payment_mode,
                payment_date=payment_date,
                recorded_by=recorded_by.key,
                target_type=target_type,
                target_id=target_id,
                customer_id=target.customer_id,
                remarks=remarks
            )
            self._store_payment(payment, walk.allocations)
            closed = self._settle_target(target, payment_date, recorded_by.key)

            self.audit_trail.log_event(
                event_type=AuditEventType.PAYMENT_RECORDED,
                entity_type=target_type.value,
                entity_id=target_id,
                metadata={
                    "payment_id": payment_id,
                    "amount": cash_amount.amount,
                    "amount_applied": walk.applied.amount,
                    "amount_unapplied": walk.remaining.amount,
                    "penalty_waived": walk.waived.amount,
                    "installments": [a.installment_id for a in walk.allocations],
                    "closed": bool(closed),
                },
                user_id=recorded_by.key
            )

        log_action(
            self.logger, "info", f"Payment {cash_amount.to_string()} allocated to {key}",
            user_id=recorded_by.key, action="record_payment", resource=key,
            extra={"payment_id": payment_id, "applied": str(walk.applied.amount),
                   "unapplied": str(walk.remaining.amount), "closed": bool(closed)}
        )

        result = AllocationResult(
            payment=payment,
            allocations=walk.allocations,
            updated_installments=walk.installments,
            amount_applied=walk.applied,
            amount_unapplied=walk.remaining,
            closed=bool(closed),
            closed_targets=closed
        )
        result.ledger_credited = self._credit_collector(
            recorded_by, cash_amount, payment_id, target_type.value, target_id
        )
        return result

    def allocate_multi_token(
        self,
        customer_id: str,
        token_amounts: Sequence[Tuple[str, Money]],
        payment_date: date,
        recorded_by: ActorRef,
        payment_mode: PaymentMode = PaymentMode.CASH,
        remarks: Optional[str] = None
    ) -> AllocationResult:
        """
        Apply one payment split across several tokens of the same customer.
        All tokens are locked together and updated in a single atomic unit;
        one payment header carries an allocation row per installment touched.
        """
        if not token_amounts:
            raise InvalidAmount("Multi-token payment needs at least one token", {})
        token_ids = [token_id for token_id, _ in token_amounts]
        if len(set(token_ids)) != len(token_ids):
            raise InvalidAmount("Each token may appear only once in a payment",
                                {"token_ids": ",".join(token_ids)})
        for _, amount in token_amounts:
            self._validate_cash(amount, "Token allocation")

        total = Money.zero(self.currency)
        for _, amount in token_amounts:
            total = total + amount

        keys = [target_key(TargetType.TOKEN, token_id) for token_id in token_ids]
        now = datetime.now(timezone.utc)
        payment_id = str(uuid.uuid4())
        allocations: List[PaymentAllocation] = []
        installments: List[Installment] = []
        applied = Money.zero(self.currency)
        unapplied = Money.zero(self.currency)
        closed: List[str] = []

        with self.locks.hold(*keys), self.storage.atomic():
            opened = []
            for token_id, amount in token_amounts:
                token, outstanding = self._open_target(TargetType.TOKEN, token_id)
                if token.customer_id != str(customer_id):
                    raise TargetNotFound(
                        f"Token {token_id} does not belong to customer {customer_id}",
                        {"target_id": token_id, "customer_id": customer_id}
                    )
                opened.append((token, outstanding, amount))

            for token, outstanding, amount in opened:
                walk = self._apply_waterfall(payment_id, outstanding, amount,
                                             Money.zero(self.currency), payment_date, now)
                allocations.extend(walk.allocations)
                installments.extend(walk.installments)
                applied = applied + walk.applied
                unapplied = unapplied + walk.remaining
                closed.extend(self._settle_target(token, payment_date, recorded_by.key))

            payment = PaymentRecord(
                id=payment_id,
                created_at=now,
                updated_at=now,
                amount=total,
                amount_applied=applied,
                amount_unapplied=unapplied,
                penalty_waived=Money.zero(self.currency),
                payment_mode=payment_mode,
                payment_date=payment_date,
                recorded_by=recorded_by.key,
                customer_id=str(customer_id),
                remarks=remarks
            )
            self._store_payment(payment, allocations)
            self.audit_trail.log_event(
                event_type=AuditEventType.PAYMENT_RECORDED,
                entity_type="customer",
                entity_id=str(customer_id),
                metadata={
                    "payment_id": payment_id,
                    "amount": total.amount,
                    "tokens": token_ids,
                    "closed_tokens": closed,
                },
                user_id=recorded_by.key
            )

        log_action(
            self.logger, "info",
            f"Multi-token payment {total.to_string()} across {len(token_ids)} tokens",
            user_id=recorded_by.key, action="record_multi_token_payment",
            resource=f"customer:{customer_id}",
            extra={"payment_id": payment_id, "closed_tokens": closed}
        )

        result = AllocationResult(
            payment=payment,
            allocations=allocations,
            updated_installments=installments,
            amount_applied=applied,
            amount_unapplied=unapplied,
            closed=bool(closed),
            closed_targets=closed
        )
        result.ledger_credited = self._credit_collector(
            recorded_by, total, payment_id, "customer", str(customer_id)
        )
        return result

    def _apply_waterfall(
        self,
        payment_id: str,
        outstanding: List[Installment],
        cash_amount: Money,
        waiver_budget: Money,
        payment_date: date,
        now: datetime
    ) -> _Walk:
        """
        Walk the ordered rows until the cash runs out. The waiver is taken
        before the cash on each row so paid plus waived never exceeds total_due.
        """
        zero = Money.zero(self.currency)
        walk = _Walk(allocations=[], installments=[], applied=zero, waived=zero,
                     remaining=cash_amount)
        waiver_left = waiver_budget

        for installment in outstanding:
            if walk.remaining.is_zero():
                break

            previous_status = installment.status
            waive = min_money(waiver_left, installment.waivable_penalty)
            installment.penalty_waived = installment.penalty_waived + waive
            apply = min_money(walk.remaining, installment.outstanding)
            installment.paid_amount = installment.paid_amount + apply

            installment.transition_to(next_status(installment, payment_date))
            if installment.status == InstallmentStatus.PAID and installment.paid_date is None:
                installment.paid_date = payment_date

            moved = apply.is_positive() or waive.is_positive()
            if moved or installment.status != previous_status:
                self.schedule_store.save_installment(installment)
                walk.installments.append(installment)
            if moved:
                walk.allocations.append(PaymentAllocation(
                    id=str(uuid.uuid4()),
                    created_at=now,
                    updated_at=now,
                    payment_id=payment_id,
                    installment_id=installment.id,
                    target_type=installment.target_type,
                    target_id=installment.target_id,
                    amount=apply,
                    penalty_waived=waive
                ))

            walk.remaining = walk.remaining - apply
            walk.applied = walk.applied + apply
            walk.waived = walk.waived + waive
            waiver_left = waiver_left - waive

        return walk

    def _settle_target(self, target: Target, payment_date: date, user_id: str) -> List[str]:
        """
        Close the target once every installment is paid; otherwise lift the
        overdue flag when no overdue installment remains.

        Returns:
            Keys of every record closed
        """
        if self.schedule_store.all_paid(target.target_type, target.id):
            closed = self.token_manager.close_target(target, payment_date, user_id)
            return [target_key(record.target_type, record.id) for record in closed]

        if target.state == TokenState.OVERDUE:
            remaining = self.schedule_store.get_outstanding(target.target_type, target.id)
            if not any(i.status == InstallmentStatus.OVERDUE for i in remaining):
                self.token_manager.reactivate(target, user_id)
        return []

    def _credit_collector(self, collector: ActorRef, amount: Money, payment_id: str,
                          target_type: str, target_id: str) -> Optional[bool]:
        if self.transfers is None:
            return None
        return self.transfers.credit_collection(
            collector, amount, payment_id, target_type, target_id, recorded_by=collector.key
        )

    def get_payment(self, payment_id: str) -> Optional[PaymentRecord]:
        data = self.storage.load(self.payments_table, payment_id)
        if data:
            return self._payment_from_dict(data)
        return None

    def get_payment_allocations(self, payment_id: str) -> List[PaymentAllocation]:
        rows = self.storage.find(self.allocations_table, {"payment_id": payment_id})
        allocations = [self._allocation_from_dict(row) for row in rows]
        allocations.sort(key=lambda a: a.installment_id)
        return allocations

    def get_target_payments(self, target_type: TargetType, target_id: str) -> List[PaymentRecord]:
        rows = self.storage.find(
            self.payments_table, {"target_type": target_type.value, "target_id": target_id}
        )
        payments = [self._payment_from_dict(row) for row in rows]
        payments.sort(key=lambda p: (p.payment_date, p.created_at))
        return payments

    def _store_payment(self, payment: PaymentRecord, allocations: List[PaymentAllocation]) -> None:
        self.storage.insert(self.payments_table, payment.id, self._payment_to_dict(payment))
        for allocation in allocations:
            self.storage.insert(self.allocations_table, allocation.id,
                                self._allocation_to_dict(allocation))

    def _payment_to_dict(self, payment: PaymentRecord) -> Dict:
        return {
            'id': payment.id,
            'created_at': payment.created_at.isoformat(),
            'updated_at': payment.updated_at.isoformat(),
            'currency': payment.amount.currency.code,
            'amount': str(payment.amount.amount),
            'amount_applied': str(payment.amount_applied.amount),
            'amount_unapplied': str(payment.amount_unapplied.amount),
            'penalty_waived': str(payment.penalty_waived.amount),
            'payment_mode': payment.payment_mode.value,
            'payment_date': payment.payment_date.isoformat(),
            'recorded_by': payment.recorded_by,
            'target_type': payment.target_type.value if payment.target_type else None,
            'target_id': payment.target_id,
            'customer_id': payment.customer_id,
            'remarks': payment.remarks,
        }

    def _payment_from_dict(self, data: Dict) -> PaymentRecord:
        currency = Currency[data['currency']]

        def get_money(name: str) -> Money:
            return Money(Decimal(data[name]), currency)

        return PaymentRecord(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            amount=get_money('amount'),
            amount_applied=get_money('amount_applied'),
            amount_unapplied=get_money('amount_unapplied'),
            penalty_waived=get_money('penalty_waived'),
            payment_mode=PaymentMode(data['payment_mode']),
            payment_date=date.fromisoformat(data['payment_date']),
            recorded_by=data['recorded_by'],
            target_type=TargetType(data['target_type']) if data.get('target_type') else None,
            target_id=data.get('target_id'),
            customer_id=data.get('customer_id'),
            remarks=data.get('remarks'),
        )

    def _allocation_to_dict(self, allocation: PaymentAllocation) -> Dict:
        return {
            'id': allocation.id,
            'created_at': allocation.created_at.isoformat(),
            'updated_at': allocation.updated_at.isoformat(),
            'payment_id': allocation.payment_id,
            'installment_id': allocation.installment_id,
            'target_type': allocation.target_type.value,
            'target_id': allocation.target_id,
            'currency': allocation.amount.currency.code,
            'amount': str(allocation.amount.amount),
            'penalty_waived': str(allocation.penalty_waived.amount),
        }

    def _allocation_from_dict(self, data: Dict) -> PaymentAllocation:
        currency = Currency[data['currency']]
        return PaymentAllocation(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            payment_id=data['payment_id'],
            installment_id=data['installment_id'],
            target_type=TargetType(data['target_type']),
            target_id=data['target_id'],
            amount=Money(Decimal(data['amount']), currency),
            penalty_waived=Money(Decimal(data['penalty_waived']), currency),
        )
