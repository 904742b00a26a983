"""
Penalty Accrual Module

Penalty policies (at most one active) and the daily accrual pass that
penalises installments past the grace period. Accrual changes only the
schedule; penalties move no cash until they are collected.
"""

from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Dict, List, Optional
import uuid

from .audit import AuditTrail, AuditEventType
from .currency import Money
from .errors import InvalidAmount, LedgerEngineError, NoActivePolicy
from .locks import KeyedLockManager
from .logging_config import get_logger, log_action
from .schedule import InstallmentStatus, ScheduleStore, target_key
from .storage import StorageInterface, StorageRecord
from .tokens import TokenManager, TokenState


class PenaltyType(Enum):
    FIXED = "fixed"       # flat amount per late installment
    PERCENT = "percent"   # percentage of the penalty base


@dataclass
class PenaltyPolicy(StorageRecord):
    """Rule for how much extra a late installment owes"""
    penalty_type: PenaltyType
    penalty_value: Decimal
    grace_days: int
    is_active: bool = False

    def penalty_for(self, base: Money) -> Money:
        """Penalty on ``base``; a fixed penalty ignores the base"""
        if self.penalty_type == PenaltyType.FIXED:
            return Money(self.penalty_value, base.currency)
        return Money(base.amount * self.penalty_value / Decimal('100'), base.currency)


@dataclass
class AccrualResult:
    """Counters of one accrual pass"""
    as_of_date: date
    installments_processed: int = 0
    total_penalty_added: Decimal = Decimal('0')
    loans_flagged_overdue: int = 0
    errors: List[Dict[str, str]] = field(default_factory=list)

    def to_dict(self) -> Dict:
        return {
            'as_of_date': self.as_of_date.isoformat(),
            'installments_processed': self.installments_processed,
            'total_penalty_added': str(self.total_penalty_added),
            'loans_flagged_overdue': self.loans_flagged_overdue,
            'errors': list(self.errors),
        }


class PenaltyPolicyManager:
    """Stores penalty policies and keeps a single one active"""

    def __init__(self, storage: StorageInterface, audit_trail: AuditTrail):
        self.storage = storage
        self.audit_trail = audit_trail
        self.table = "penalty_policies"
        self.logger = get_logger("token_ledger.penalties")

    def create_policy(
        self,
        penalty_type: PenaltyType,
        penalty_value: Decimal,
        grace_days: int,
        activate: bool = True,
        user_id: Optional[str] = None
    ) -> PenaltyPolicy:
        """
        Create a penalty policy, optionally making it the active one.

        Raises:
            InvalidAmount: negative value or grace days
        """
        if not isinstance(penalty_value, Decimal):
            penalty_value = Decimal(str(penalty_value))
        if penalty_value < 0:
            raise InvalidAmount(f"Penalty value cannot be negative: {penalty_value}",
                                {"penalty_value": penalty_value})
        if grace_days < 0:
            raise InvalidAmount(f"Grace days cannot be negative: {grace_days}",
                                {"grace_days": grace_days})

        now = datetime.now(timezone.utc)
        policy = PenaltyPolicy(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            penalty_type=penalty_type,
            penalty_value=penalty_value,
            grace_days=grace_days
        )

        with self.storage.atomic():
            self._save_policy(policy)
            self.audit_trail.log_event(
                event_type=AuditEventType.POLICY_CREATED,
                entity_type="penalty_policy",
                entity_id=policy.id,
                metadata={"penalty_type": penalty_type.value, "penalty_value": penalty_value,
                          "grace_days": grace_days},
                user_id=user_id
            )
            if activate:
                policy = self.activate_policy(policy.id, user_id=user_id)

        return policy

    def activate_policy(self, policy_id: str, user_id: Optional[str] = None) -> PenaltyPolicy:
        """Activate one policy and deactivate every other in the same unit"""
        with self.storage.atomic():
            target = self.get_policy(policy_id)
            if target is None:
                raise ValueError(f"Penalty policy {policy_id} not found")

            for policy in self.list_policies():
                if policy.id != policy_id and policy.is_active:
                    policy.is_active = False
                    policy.updated_at = datetime.now(timezone.utc)
                    self._save_policy(policy)

            target.is_active = True
            target.updated_at = datetime.now(timezone.utc)
            self._save_policy(target)
            self.audit_trail.log_event(
                event_type=AuditEventType.POLICY_ACTIVATED,
                entity_type="penalty_policy",
                entity_id=policy_id,
                metadata={"penalty_type": target.penalty_type.value,
                          "penalty_value": target.penalty_value,
                          "grace_days": target.grace_days},
                user_id=user_id
            )

        log_action(self.logger, "info", f"Penalty policy {policy_id} activated",
                   user_id=user_id, action="activate_policy",
                   resource=f"penalty_policy:{policy_id}")
        return target

    def get_policy(self, policy_id: str) -> Optional[PenaltyPolicy]:
        data = self.storage.load(self.table, policy_id)
        if data:
            return self._policy_from_dict(data)
        return None

    def get_active_policy(self) -> Optional[PenaltyPolicy]:
        rows = self.storage.find(self.table, {"is_active": True})
        if not rows:
            return None
        return self._policy_from_dict(rows[0])

    def list_policies(self) -> List[PenaltyPolicy]:
        policies = [self._policy_from_dict(row) for row in self.storage.load_all(self.table)]
        policies.sort(key=lambda p: p.created_at)
        return policies

    def _save_policy(self, policy: PenaltyPolicy) -> None:
        data = policy.to_dict()
        data['penalty_type'] = policy.penalty_type.value
        data['penalty_value'] = str(policy.penalty_value)
        self.storage.save(self.table, policy.id, data)

    def _policy_from_dict(self, data: Dict) -> PenaltyPolicy:
        return PenaltyPolicy(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            penalty_type=PenaltyType(data['penalty_type']),
            penalty_value=Decimal(data['penalty_value']),
            grace_days=data['grace_days'],
            is_active=data['is_active'],
        )


class PenaltyAccrualEngine:
    """
    Daily pass that applies the active penalty policy.

    Never-paid (pending) rows are penalised on the installment amount and flag
    their parent overdue. Partially paid rows without a penalty are penalised
    on their remaining unpaid amount and leave the parent untouched. A row
    that already carries a penalty is never recomputed, so re-running a day is
    a no-op.
    """

    def __init__(
        self,
        storage: StorageInterface,
        schedule_store: ScheduleStore,
        token_manager: TokenManager,
        policy_manager: PenaltyPolicyManager,
        locks: KeyedLockManager,
        audit_trail: AuditTrail
    ):
        self.storage = storage
        self.schedule_store = schedule_store
        self.token_manager = token_manager
        self.policy_manager = policy_manager
        self.locks = locks
        self.audit_trail = audit_trail
        self.logger = get_logger("token_ledger.accrual")

    def accrue(self, as_of_date: date) -> AccrualResult:
        """
        Apply the active policy to every late installment as of ``as_of_date``.

        Raises:
            NoActivePolicy: no penalty policy is active
        """
        policy = self.policy_manager.get_active_policy()
        if policy is None:
            raise NoActivePolicy("No active penalty policy; accrual cannot run",
                                 {"as_of_date": as_of_date.isoformat()})

        result = AccrualResult(as_of_date=as_of_date)
        candidates = (
            self.schedule_store.find_by_status(InstallmentStatus.PENDING) +
            self.schedule_store.find_by_status(InstallmentStatus.PARTIAL)
        )

        for candidate in candidates:
            if candidate.due_date >= as_of_date:
                continue
            if (as_of_date - candidate.due_date).days <= policy.grace_days:
                continue
            try:
                self._accrue_installment(candidate.id, policy, as_of_date, result)
            except LedgerEngineError as e:
                result.errors.append({"installment_id": candidate.id, "error": e.message})
                log_action(
                    self.logger, "warning",
                    f"Accrual skipped installment {candidate.id}: {e.message}",
                    action="accrue_penalty", resource=f"installment:{candidate.id}",
                    extra=e.context
                )

        log_action(
            self.logger, "info", f"Penalty accrual for {as_of_date.isoformat()} complete",
            action="run_accrual", extra=result.to_dict()
        )
        return result

    def _accrue_installment(self, installment_id: str, policy: PenaltyPolicy,
                            as_of_date: date, result: AccrualResult) -> None:
        # Re-read under the target lock; another writer may have moved the row
        installment = self.schedule_store.get_installment(installment_id)
        key = target_key(installment.target_type, installment.target_id)

        with self.locks.hold(key), self.storage.atomic():
            installment = self.schedule_store.get_installment(installment_id)
            target = self.token_manager.get_target(installment.target_type, installment.target_id)
            if target is None or target.state == TokenState.CLOSED:
                return

            if installment.status == InstallmentStatus.PENDING:
                base = installment.installment_amount
                flag_parent = True
            elif (installment.status == InstallmentStatus.PARTIAL
                  and installment.penalty_amount.is_zero()):
                base = installment.outstanding
                flag_parent = False
            else:
                return

            penalty = policy.penalty_for(base)
            installment.penalty_amount = penalty
            installment.total_due = installment.installment_amount + penalty
            installment.transition_to(InstallmentStatus.OVERDUE)
            self.schedule_store.save_installment(installment)

            self.audit_trail.log_event(
                event_type=AuditEventType.PENALTY_ACCRUED,
                entity_type="installment",
                entity_id=installment.id,
                metadata={
                    "target": key,
                    "penalty_amount": penalty.amount,
                    "penalty_base": base.amount,
                    "days_overdue": (as_of_date - installment.due_date).days,
                    "policy_id": policy.id,
                }
            )

            flagged = flag_parent and self.token_manager.mark_overdue(target)

        result.installments_processed += 1
        result.total_penalty_added += penalty.amount
        if flagged:
            result.loans_flagged_overdue += 1
