"""
Ledger Account Module

One running-balance account per actor (the organization and each field
agent). Every balance change is a single atomic unit that updates
current_balance and appends exactly one transaction carrying the resulting
balance, so current_balance always equals credits minus debits.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, asdict, field
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import ClassVar, Dict, List, Optional, Union
import uuid

from .audit import AuditTrail, AuditEventType
from .currency import Money, Currency
from .errors import DuplicateRecordError, InsufficientBalance, InvalidAmount
from .locks import KeyedLockManager
from .logging_config import get_logger, log_action
from .storage import StorageInterface, StorageRecord


class ActorType(Enum):
    """Who owns a ledger account"""
    ORGANIZATION = "organization"
    AGENT = "agent"


@dataclass(frozen=True)
class ActorRef:
    """Identifies the actor behind a ledger account"""
    actor_type: ActorType
    actor_id: str

    @property
    def key(self) -> str:
        """Account id; unique per actor"""
        return f"{self.actor_type.value}:{self.actor_id}"

    @classmethod
    def organization(cls, actor_id) -> 'ActorRef':
        return cls(ActorType.ORGANIZATION, str(actor_id))

    @classmethod
    def agent(cls, actor_id) -> 'ActorRef':
        return cls(ActorType.AGENT, str(actor_id))

    @classmethod
    def parse(cls, key: str) -> 'ActorRef':
        actor_type, _, actor_id = key.partition(":")
        return cls(ActorType(actor_type), actor_id)

    def __str__(self) -> str:
        return self.key


class LedgerTransactionType(Enum):
    CREDIT = "credit"
    DEBIT = "debit"


# Reference variants: each kind carries exactly the fields it needs.

@dataclass(frozen=True)
class CollectionReference:
    """Cash collected against a token or batch"""
    reference_type: ClassVar[str] = "collection"
    payment_id: str
    target_type: str
    target_id: str

    @property
    def reference_id(self) -> str:
        return self.payment_id


@dataclass(frozen=True)
class FundingReference:
    """Organization handing float to an agent"""
    reference_type: ClassVar[str] = "funding"
    from_account: str
    to_account: str
    reason: Optional[str] = None

    @property
    def reference_id(self) -> str:
        return f"{self.from_account}->{self.to_account}"


@dataclass(frozen=True)
class SettlementReference:
    """Agent handing collected cash back to the organization"""
    reference_type: ClassVar[str] = "settlement"
    from_account: str
    to_account: str
    reason: Optional[str] = None

    @property
    def reference_id(self) -> str:
        return f"{self.from_account}->{self.to_account}"


@dataclass(frozen=True)
class TokenCreationReference:
    """Issuer funding a newly issued token or batch"""
    reference_type: ClassVar[str] = "token_creation"
    target_type: str
    target_id: str
    quantity: int = 1

    @property
    def reference_id(self) -> str:
        return self.target_id


@dataclass(frozen=True)
class ManualAdjustmentReference:
    """Operator correction outside the normal flows"""
    reference_type: ClassVar[str] = "manual_adjustment"
    reason: str

    @property
    def reference_id(self) -> Optional[str]:
        return None


LedgerReference = Union[
    CollectionReference, FundingReference, SettlementReference,
    TokenCreationReference, ManualAdjustmentReference
]

REFERENCE_TYPES = {
    cls.reference_type: cls for cls in (
        CollectionReference, FundingReference, SettlementReference,
        TokenCreationReference, ManualAdjustmentReference
    )
}


def reference_to_dict(reference: LedgerReference) -> Dict:
    result = asdict(reference)
    result['reference_type'] = reference.reference_type
    return result


def reference_from_dict(data: Dict) -> LedgerReference:
    data = dict(data)
    reference_cls = REFERENCE_TYPES[data.pop('reference_type')]
    return reference_cls(**data)


@dataclass
class LedgerAccount(StorageRecord):
    """Running-balance account of one actor"""
    actor_type: ActorType
    actor_id: str
    current_balance: Money
    last_sequence: int = 0

    @property
    def actor(self) -> ActorRef:
        return ActorRef(self.actor_type, self.actor_id)


@dataclass
class LedgerTransaction(StorageRecord):
    """Append-only balance movement"""
    account_id: str
    transaction_type: LedgerTransactionType
    amount: Money
    balance_after: Money
    reference: LedgerReference
    sequence: int
    description: Optional[str] = None
    recorded_by: Optional[str] = None

    @property
    def reference_type(self) -> str:
        return self.reference.reference_type

    @property
    def reference_id(self) -> Optional[str]:
        return self.reference.reference_id

    @property
    def signed_amount(self) -> Money:
        if self.transaction_type == LedgerTransactionType.DEBIT:
            return -self.amount
        return self.amount


@dataclass
class ReconciliationResult:
    """Comparison of an account's balance with its transaction log"""
    account_id: str
    current_balance: Money
    computed_balance: Money
    transaction_count: int
    balanced: bool
    discrepancies: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict:
        return {
            'account_id': self.account_id,
            'current_balance': str(self.current_balance.amount),
            'computed_balance': str(self.computed_balance.amount),
            'transaction_count': self.transaction_count,
            'balanced': self.balanced,
            'discrepancies': list(self.discrepancies),
        }


class LedgerStore(ABC):
    """
    Persistence capability the ledger service needs. Account ids are unique;
    transactions are append-only and must reference an existing account.
    """

    @abstractmethod
    def get_account(self, account_id: str) -> Optional[LedgerAccount]:
        pass

    @abstractmethod
    def insert_account(self, account: LedgerAccount) -> None:
        """Insert a new account; DuplicateRecordError if the id is taken"""
        pass

    @abstractmethod
    def save_account(self, account: LedgerAccount) -> None:
        pass

    @abstractmethod
    def append_transaction(self, transaction: LedgerTransaction) -> None:
        pass

    @abstractmethod
    def list_accounts(self) -> List[LedgerAccount]:
        pass

    @abstractmethod
    def list_transactions(self, account_id: str) -> List[LedgerTransaction]:
        """Transactions of an account in sequence order"""
        pass

    @abstractmethod
    def atomic(self):
        pass


class StorageLedgerStore(LedgerStore):
    """LedgerStore on top of a StorageInterface backend"""

    def __init__(self, storage: StorageInterface):
        self.storage = storage
        self.accounts_table = "ledger_accounts"
        self.transactions_table = "ledger_transactions"

    def atomic(self):
        return self.storage.atomic()

    def get_account(self, account_id: str) -> Optional[LedgerAccount]:
        data = self.storage.load(self.accounts_table, account_id)
        if data:
            return self._account_from_dict(data)
        return None

    def insert_account(self, account: LedgerAccount) -> None:
        self.storage.insert(self.accounts_table, account.id, self._account_to_dict(account))

    def save_account(self, account: LedgerAccount) -> None:
        self.storage.save(self.accounts_table, account.id, self._account_to_dict(account))

    def append_transaction(self, transaction: LedgerTransaction) -> None:
        if not self.storage.exists(self.accounts_table, transaction.account_id):
            raise ValueError(f"Ledger account {transaction.account_id} does not exist")
        self.storage.insert(
            self.transactions_table, transaction.id, self._transaction_to_dict(transaction)
        )

    def list_accounts(self) -> List[LedgerAccount]:
        accounts = [self._account_from_dict(row) for row in self.storage.load_all(self.accounts_table)]
        accounts.sort(key=lambda a: a.id)
        return accounts

    def list_transactions(self, account_id: str) -> List[LedgerTransaction]:
        rows = self.storage.find(self.transactions_table, {'account_id': account_id})
        transactions = [self._transaction_from_dict(row) for row in rows]
        transactions.sort(key=lambda t: t.sequence)
        return transactions

    def _account_to_dict(self, account: LedgerAccount) -> Dict:
        return {
            'id': account.id,
            'created_at': account.created_at.isoformat(),
            'updated_at': account.updated_at.isoformat(),
            'actor_type': account.actor_type.value,
            'actor_id': account.actor_id,
            'current_balance': str(account.current_balance.amount),
            'currency': account.current_balance.currency.code,
            'last_sequence': account.last_sequence,
        }

    def _account_from_dict(self, data: Dict) -> LedgerAccount:
        return LedgerAccount(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            actor_type=ActorType(data['actor_type']),
            actor_id=data['actor_id'],
            current_balance=Money(Decimal(data['current_balance']), Currency[data['currency']]),
            last_sequence=data.get('last_sequence', 0),
        )

    def _transaction_to_dict(self, transaction: LedgerTransaction) -> Dict:
        return {
            'id': transaction.id,
            'created_at': transaction.created_at.isoformat(),
            'updated_at': transaction.updated_at.isoformat(),
            'account_id': transaction.account_id,
            'transaction_type': transaction.transaction_type.value,
            'amount': str(transaction.amount.amount),
            'balance_after': str(transaction.balance_after.amount),
            'currency': transaction.amount.currency.code,
            'reference': reference_to_dict(transaction.reference),
            'sequence': transaction.sequence,
            'description': transaction.description,
            'recorded_by': transaction.recorded_by,
        }

    def _transaction_from_dict(self, data: Dict) -> LedgerTransaction:
        currency = Currency[data['currency']]
        return LedgerTransaction(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            account_id=data['account_id'],
            transaction_type=LedgerTransactionType(data['transaction_type']),
            amount=Money(Decimal(data['amount']), currency),
            balance_after=Money(Decimal(data['balance_after']), currency),
            reference=reference_from_dict(data['reference']),
            sequence=data['sequence'],
            description=data.get('description'),
            recorded_by=data.get('recorded_by'),
        )


class LedgerService:
    """
    Credits and debits actor accounts. Each movement holds the account lock
    and runs as one atomic unit.
    """

    def __init__(
        self,
        store: LedgerStore,
        locks: KeyedLockManager,
        audit_trail: AuditTrail,
        currency: Currency = Currency.INR
    ):
        self.store = store
        self.locks = locks
        self.audit_trail = audit_trail
        self.currency = currency
        self.logger = get_logger("token_ledger.ledger")

    def ensure_account(self, actor: ActorRef) -> LedgerAccount:
        """
        Get the actor's account, creating it on first use. When a concurrent
        caller wins the insert, the winner's row is returned.
        """
        account = self.store.get_account(actor.key)
        if account:
            return account

        now = datetime.now(timezone.utc)
        account = LedgerAccount(
            id=actor.key,
            created_at=now,
            updated_at=now,
            actor_type=actor.actor_type,
            actor_id=actor.actor_id,
            current_balance=Money.zero(self.currency)
        )
        try:
            with self.store.atomic():
                self.store.insert_account(account)
                self.audit_trail.log_event(
                    event_type=AuditEventType.ACCOUNT_OPENED,
                    entity_type="ledger_account",
                    entity_id=account.id,
                    metadata={"actor_type": actor.actor_type.value, "actor_id": actor.actor_id}
                )
        except DuplicateRecordError:
            self.logger.debug(f"Ledger account {actor.key} created concurrently, reusing it")
            existing = self.store.get_account(actor.key)
            if existing is None:
                raise
            return existing

        log_action(
            self.logger, "info", f"Ledger account opened for {actor.key}",
            action="open_account", resource=f"ledger_account:{actor.key}"
        )
        return account

    def get_account(self, actor: ActorRef) -> Optional[LedgerAccount]:
        return self.store.get_account(actor.key)

    def get_balance(self, actor: ActorRef) -> Money:
        """Current balance; zero for an actor without an account"""
        account = self.store.get_account(actor.key)
        if account is None:
            return Money.zero(self.currency)
        return account.current_balance

    def get_transactions(self, actor: ActorRef) -> List[LedgerTransaction]:
        return self.store.list_transactions(actor.key)

    def credit(
        self,
        actor: ActorRef,
        amount: Money,
        reference: LedgerReference,
        recorded_by: Optional[str] = None,
        description: Optional[str] = None
    ) -> LedgerTransaction:
        """Add amount to the actor's account"""
        return self._post(actor, LedgerTransactionType.CREDIT, amount, reference,
                          recorded_by, description)

    def debit(
        self,
        actor: ActorRef,
        amount: Money,
        reference: LedgerReference,
        recorded_by: Optional[str] = None,
        description: Optional[str] = None
    ) -> LedgerTransaction:
        """
        Take amount from the actor's account.

        Raises:
            InsufficientBalance: balance is below amount; nothing is written
        """
        return self._post(actor, LedgerTransactionType.DEBIT, amount, reference,
                          recorded_by, description)

    def _validate_amount(self, amount: Money) -> None:
        if not isinstance(amount, Money) or not amount.is_positive():
            raise InvalidAmount(f"Ledger amount must be positive, got {amount}",
                                {"amount": amount})
        if amount.currency != self.currency:
            raise InvalidAmount(
                f"Ledger is kept in {self.currency.code}, got {amount.currency.code}",
                {"amount": amount}
            )

    def _post(
        self,
        actor: ActorRef,
        transaction_type: LedgerTransactionType,
        amount: Money,
        reference: LedgerReference,
        recorded_by: Optional[str],
        description: Optional[str]
    ) -> LedgerTransaction:
        self._validate_amount(amount)

        with self.locks.hold(actor.key), self.store.atomic():
            account = self.ensure_account(actor)

            if transaction_type == LedgerTransactionType.DEBIT:
                if account.current_balance < amount:
                    raise InsufficientBalance(
                        f"Insufficient balance in {actor.key}: "
                        f"{account.current_balance.to_string()} < {amount.to_string()}",
                        {"account_id": actor.key, "balance": account.current_balance.amount,
                         "requested": amount.amount}
                    )
                new_balance = account.current_balance - amount
            else:
                new_balance = account.current_balance + amount

            now = datetime.now(timezone.utc)
            account.current_balance = new_balance
            account.last_sequence += 1
            account.updated_at = now

            transaction = LedgerTransaction(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                account_id=account.id,
                transaction_type=transaction_type,
                amount=amount,
                balance_after=new_balance,
                reference=reference,
                sequence=account.last_sequence,
                description=description,
                recorded_by=str(recorded_by) if recorded_by is not None else None
            )
            self.store.save_account(account)
            self.store.append_transaction(transaction)

            event_type = (AuditEventType.ACCOUNT_DEBITED
                          if transaction_type == LedgerTransactionType.DEBIT
                          else AuditEventType.ACCOUNT_CREDITED)
            self.audit_trail.log_event(
                event_type=event_type,
                entity_type="ledger_account",
                entity_id=account.id,
                metadata={
                    "transaction_id": transaction.id,
                    "amount": amount.amount,
                    "balance_after": new_balance.amount,
                    "reference": reference_to_dict(reference),
                },
                user_id=transaction.recorded_by
            )

        log_action(
            self.logger, "info",
            f"Ledger {transaction_type.value} {amount.to_string()} on {actor.key}",
            user_id=transaction.recorded_by, action=f"ledger_{transaction_type.value}",
            resource=f"ledger_account:{actor.key}",
            extra={"reference_type": reference.reference_type,
                   "reference_id": reference.reference_id,
                   "balance_after": str(new_balance.amount)}
        )
        return transaction

    def reconcile(self, actor: ActorRef) -> ReconciliationResult:
        """Check current_balance against the sum of the account's transactions"""
        account = self.store.get_account(actor.key)
        transactions = self.store.list_transactions(actor.key)
        computed = Money.zero(self.currency)
        discrepancies = []

        for expected_sequence, transaction in enumerate(transactions, start=1):
            computed = computed + transaction.signed_amount
            if transaction.balance_after != computed:
                discrepancies.append(
                    f"Transaction {transaction.id} records balance_after "
                    f"{transaction.balance_after.amount}, running total is {computed.amount}"
                )
            if transaction.sequence != expected_sequence:
                discrepancies.append(
                    f"Transaction {transaction.id} has sequence {transaction.sequence}, "
                    f"expected {expected_sequence}"
                )

        current = account.current_balance if account else Money.zero(self.currency)
        if current != computed:
            discrepancies.append(
                f"Account balance {current.amount} differs from transaction total {computed.amount}"
            )

        return ReconciliationResult(
            account_id=actor.key,
            current_balance=current,
            computed_balance=computed,
            transaction_count=len(transactions),
            balanced=not discrepancies,
            discrepancies=discrepancies
        )

    def list_accounts(self) -> List[LedgerAccount]:
        return self.store.list_accounts()
