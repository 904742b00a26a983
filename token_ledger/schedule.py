"""
Installment Schedule Module

Installment rows, the installment status state machine, and the schedule
store the allocator and accrual engine read and write through.
"""

from dataclasses import dataclass
from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Dict, List, Optional

from .currency import Money, Currency
from .storage import StorageInterface, StorageRecord


class InstallmentStatus(Enum):
    """Installment lifecycle states"""
    PENDING = "pending"
    PARTIAL = "partial"
    OVERDUE = "overdue"
    PAID = "paid"


class TargetType(Enum):
    """What a schedule belongs to"""
    TOKEN = "token"
    BATCH = "batch"


OPEN_STATUSES = (InstallmentStatus.PENDING, InstallmentStatus.PARTIAL, InstallmentStatus.OVERDUE)

ALLOWED_TRANSITIONS = {
    InstallmentStatus.PENDING: {InstallmentStatus.PARTIAL, InstallmentStatus.OVERDUE, InstallmentStatus.PAID},
    InstallmentStatus.PARTIAL: {InstallmentStatus.OVERDUE, InstallmentStatus.PAID},
    InstallmentStatus.OVERDUE: {InstallmentStatus.PAID},
    InstallmentStatus.PAID: set(),
}


def target_key(target_type: TargetType, target_id: str) -> str:
    """Lock and reference key for a token or batch"""
    return f"{target_type.value}:{target_id}"


@dataclass
class Installment(StorageRecord):
    """One scheduled daily repayment of a token or batch"""
    target_type: TargetType
    target_id: str
    installment_no: int
    due_date: date
    installment_amount: Money
    penalty_amount: Money = None
    penalty_waived: Money = None
    paid_amount: Money = None
    total_due: Money = None
    status: InstallmentStatus = InstallmentStatus.PENDING
    paid_date: Optional[date] = None

    def __post_init__(self):
        zero = Money.zero(self.installment_amount.currency)
        if self.penalty_amount is None:
            self.penalty_amount = zero
        if self.penalty_waived is None:
            self.penalty_waived = zero
        if self.paid_amount is None:
            self.paid_amount = zero
        if self.total_due is None:
            self.total_due = self.installment_amount + self.penalty_amount

    @property
    def currency(self) -> Currency:
        return self.installment_amount.currency

    @property
    def received(self) -> Money:
        """Cash paid plus penalty waived"""
        return self.paid_amount + self.penalty_waived

    @property
    def outstanding(self) -> Money:
        return self.total_due - self.received

    @property
    def waivable_penalty(self) -> Money:
        return self.penalty_amount - self.penalty_waived

    @property
    def is_open(self) -> bool:
        return self.status in OPEN_STATUSES

    def transition_to(self, new_status: InstallmentStatus) -> None:
        """Move to new_status, rejecting moves the state machine forbids"""
        if new_status == self.status:
            return
        if new_status not in ALLOWED_TRANSITIONS[self.status]:
            raise ValueError(
                f"Installment {self.id} cannot move from {self.status.value} to {new_status.value}"
            )
        self.status = new_status


def next_status(installment: Installment, today: date) -> InstallmentStatus:
    """
    Status an installment should hold after a payment or waiver.

    Paid once cash plus waiver covers total_due. An overdue row stays overdue
    until paid, a row with any cash becomes partial, an untouched row past its
    due date is overdue, anything else is pending. Paid is terminal.
    """
    if installment.status == InstallmentStatus.PAID:
        return InstallmentStatus.PAID
    if installment.received >= installment.total_due:
        return InstallmentStatus.PAID
    if installment.status == InstallmentStatus.OVERDUE:
        return InstallmentStatus.OVERDUE
    if installment.paid_amount.is_positive():
        return InstallmentStatus.PARTIAL
    if installment.due_date < today:
        return InstallmentStatus.OVERDUE
    return InstallmentStatus.PENDING


def installment_sort_key(installment: Installment):
    """Oldest due date first, id breaks ties"""
    return (installment.due_date, installment.id)


class ScheduleStore:
    """
    Reads and writes installment rows. Rows are created once at issuance and
    only ever updated afterwards.
    """

    def __init__(self, storage: StorageInterface):
        self.storage = storage
        self.table = "installments"

    @staticmethod
    def make_id(target_type: TargetType, target_id: str, installment_no: int) -> str:
        # Zero padding keeps id order equal to creation order
        return f"{target_type.value}-{target_id}-{installment_no:05d}"

    def add_installments(self, installments: List[Installment]) -> None:
        for installment in installments:
            self.storage.insert(self.table, installment.id, self._installment_to_dict(installment))

    def save_installment(self, installment: Installment) -> None:
        installment.updated_at = datetime.now(timezone.utc)
        self.storage.save(self.table, installment.id, self._installment_to_dict(installment))

    def get_installment(self, installment_id: str) -> Optional[Installment]:
        data = self.storage.load(self.table, installment_id)
        if data:
            return self._installment_from_dict(data)
        return None

    def get_installments(self, target_type: TargetType, target_id: str) -> List[Installment]:
        """All rows of a target ordered oldest first"""
        rows = self.storage.find(
            self.table, {"target_type": target_type.value, "target_id": target_id}
        )
        installments = [self._installment_from_dict(row) for row in rows]
        installments.sort(key=installment_sort_key)
        return installments

    def get_outstanding(self, target_type: TargetType, target_id: str) -> List[Installment]:
        """Pending, partial and overdue rows, oldest due date first"""
        return [i for i in self.get_installments(target_type, target_id) if i.is_open]

    def find_by_status(self, status: InstallmentStatus) -> List[Installment]:
        rows = self.storage.find(self.table, {"status": status.value})
        installments = [self._installment_from_dict(row) for row in rows]
        installments.sort(key=installment_sort_key)
        return installments

    def all_paid(self, target_type: TargetType, target_id: str) -> bool:
        installments = self.get_installments(target_type, target_id)
        return bool(installments) and all(
            i.status == InstallmentStatus.PAID for i in installments
        )

    def _installment_to_dict(self, installment: Installment) -> Dict:
        return {
            'id': installment.id,
            'created_at': installment.created_at.isoformat(),
            'updated_at': installment.updated_at.isoformat(),
            'target_type': installment.target_type.value,
            'target_id': installment.target_id,
            'installment_no': installment.installment_no,
            'due_date': installment.due_date.isoformat(),
            'currency': installment.currency.code,
            'installment_amount': str(installment.installment_amount.amount),
            'penalty_amount': str(installment.penalty_amount.amount),
            'penalty_waived': str(installment.penalty_waived.amount),
            'paid_amount': str(installment.paid_amount.amount),
            'total_due': str(installment.total_due.amount),
            'status': installment.status.value,
            'paid_date': installment.paid_date.isoformat() if installment.paid_date else None,
        }

    def _installment_from_dict(self, data: Dict) -> Installment:
        currency = Currency[data['currency']]

        def get_money(field: str) -> Money:
            return Money(Decimal(data[field]), currency)

        return Installment(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            target_type=TargetType(data['target_type']),
            target_id=data['target_id'],
            installment_no=data['installment_no'],
            due_date=date.fromisoformat(data['due_date']),
            installment_amount=get_money('installment_amount'),
            penalty_amount=get_money('penalty_amount'),
            penalty_waived=get_money('penalty_waived'),
            paid_amount=get_money('paid_amount'),
            total_due=get_money('total_due'),
            status=InstallmentStatus(data['status']),
            paid_date=date.fromisoformat(data['paid_date']) if data.get('paid_date') else None,
        )
