"""
Token and Batch Module

Token (single daily micro-loan) and TokenBatch records, their lifecycle, and
issuance: numbering, installment schedule generation and the issuer's funding
debit. Pricing is done by the caller; issuance receives already priced
principal and total amounts.
"""

from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal, ROUND_DOWN
from enum import Enum
from typing import Dict, List, Optional, Union
import uuid

from .audit import AuditTrail, AuditEventType
from .currency import Money, Currency
from .errors import InvalidAmount, TargetNotFound
from .ledger import ActorRef, LedgerTransaction
from .locks import KeyedLockManager
from .logging_config import get_logger, log_action
from .schedule import Installment, ScheduleStore, TargetType, target_key
from .storage import StorageInterface, StorageRecord


class TokenState(Enum):
    """Token and batch lifecycle states"""
    ACTIVE = "active"
    OVERDUE = "overdue"
    CLOSED = "closed"


@dataclass
class Token(StorageRecord):
    """A single daily-repayment micro-loan"""
    token_no: str
    customer_id: str
    agent_id: str
    principal: Money
    total_amount: Money
    daily_installment: Money
    duration_days: int
    start_date: date
    end_date: date
    state: TokenState = TokenState.ACTIVE
    batch_id: Optional[str] = None
    closed_date: Optional[date] = None
    issued_by: Optional[str] = None

    target_type = TargetType.TOKEN

    @property
    def is_closed(self) -> bool:
        return self.state == TokenState.CLOSED


@dataclass
class TokenBatch(StorageRecord):
    """A group of identical tokens billed as one combined daily installment"""
    batch_no: str
    customer_id: str
    agent_id: str
    quantity: int
    principal: Money              # per token
    total_amount: Money           # per token
    daily_installment: Money      # per token
    total_daily_amount: Money
    total_batch_amount: Money
    duration_days: int
    start_date: date
    end_date: date
    state: TokenState = TokenState.ACTIVE
    token_ids: List[str] = field(default_factory=list)
    closed_date: Optional[date] = None
    issued_by: Optional[str] = None

    target_type = TargetType.BATCH

    @property
    def is_closed(self) -> bool:
        return self.state == TokenState.CLOSED


Target = Union[Token, TokenBatch]


@dataclass
class IssuanceResult:
    """What an issuance created"""
    target: Target
    installments: List[Installment]
    tokens: List[Token]
    funding_transaction: Optional[LedgerTransaction] = None

    @property
    def funded(self) -> bool:
        return self.funding_transaction is not None


class TokenManager:
    """
    Loads, saves and moves tokens and batches through their lifecycle
    """

    def __init__(self, storage: StorageInterface, audit_trail: AuditTrail):
        self.storage = storage
        self.audit_trail = audit_trail
        self.tokens_table = "tokens"
        self.batches_table = "token_batches"
        self.logger = get_logger("token_ledger.tokens")

    def get_token(self, token_id: str) -> Optional[Token]:
        data = self.storage.load(self.tokens_table, token_id)
        if data:
            return self._token_from_dict(data)
        return None

    def get_batch(self, batch_id: str) -> Optional[TokenBatch]:
        data = self.storage.load(self.batches_table, batch_id)
        if data:
            return self._batch_from_dict(data)
        return None

    def get_target(self, target_type: TargetType, target_id: str) -> Optional[Target]:
        if target_type == TargetType.BATCH:
            return self.get_batch(target_id)
        return self.get_token(target_id)

    def require_target(self, target_type: TargetType, target_id: str) -> Target:
        target = self.get_target(target_type, target_id)
        if target is None:
            raise TargetNotFound(
                f"{target_type.value.capitalize()} {target_id} not found",
                {"target_type": target_type.value, "target_id": target_id}
            )
        return target

    def get_customer_tokens(self, customer_id: str) -> List[Token]:
        rows = self.storage.find(self.tokens_table, {"customer_id": str(customer_id)})
        tokens = [self._token_from_dict(row) for row in rows]
        tokens.sort(key=lambda t: t.token_no)
        return tokens

    def get_batch_tokens(self, batch_id: str) -> List[Token]:
        rows = self.storage.find(self.tokens_table, {"batch_id": batch_id})
        tokens = [self._token_from_dict(row) for row in rows]
        tokens.sort(key=lambda t: t.token_no)
        return tokens

    def save_target(self, target: Target) -> None:
        target.updated_at = datetime.now(timezone.utc)
        if isinstance(target, TokenBatch):
            self.storage.save(self.batches_table, target.id, self._batch_to_dict(target))
        else:
            self.storage.save(self.tokens_table, target.id, self._token_to_dict(target))

    def close_target(self, target: Target, closed_date: date,
                     user_id: Optional[str] = None) -> List[Target]:
        """
        Close a token or batch; closing a batch closes every child token too.
        Must run inside the caller's atomic unit.

        Returns:
            Every record that was closed
        """
        closed = [target]
        if isinstance(target, TokenBatch):
            closed.extend(t for t in self.get_batch_tokens(target.id) if not t.is_closed)

        for record in closed:
            record.state = TokenState.CLOSED
            record.closed_date = closed_date
            self.save_target(record)

        self.audit_trail.log_event(
            event_type=AuditEventType.TARGET_CLOSED,
            entity_type=target.target_type.value,
            entity_id=target.id,
            metadata={
                "closed_date": closed_date.isoformat(),
                "closed_tokens": [r.id for r in closed if isinstance(r, Token)]
            },
            user_id=user_id
        )
        log_action(
            self.logger, "info", f"Closed {target_key(target.target_type, target.id)}",
            user_id=user_id, action="close_target",
            resource=target_key(target.target_type, target.id),
            extra={"records_closed": len(closed)}
        )
        return closed

    def mark_overdue(self, target: Target) -> bool:
        """Flag an active target overdue; False when it was not active"""
        if target.state != TokenState.ACTIVE:
            return False
        target.state = TokenState.OVERDUE
        self.save_target(target)
        self.audit_trail.log_event(
            event_type=AuditEventType.TARGET_FLAGGED_OVERDUE,
            entity_type=target.target_type.value,
            entity_id=target.id,
            metadata={}
        )
        return True

    def reactivate(self, target: Target, user_id: Optional[str] = None) -> bool:
        """Return an overdue target to active; False when it was not overdue"""
        if target.state != TokenState.OVERDUE:
            return False
        target.state = TokenState.ACTIVE
        self.save_target(target)
        self.audit_trail.log_event(
            event_type=AuditEventType.TARGET_REACTIVATED,
            entity_type=target.target_type.value,
            entity_id=target.id,
            metadata={},
            user_id=user_id
        )
        return True

    def next_number(self, prefix: str, issue_date: date) -> str:
        """Next PREFIX-YYYYMMDD-NNNN number for the issue date"""
        stem = f"{prefix}-{issue_date.strftime('%Y%m%d')}-"
        if prefix == "TKN":
            table, number_field = self.tokens_table, "token_no"
        else:
            table, number_field = self.batches_table, "batch_no"

        last = 0
        for row in self.storage.load_all(table):
            number = row.get(number_field, "")
            if number.startswith(stem):
                last = max(last, int(number.rsplit("-", 1)[1]))
        return f"{stem}{last + 1:04d}"

    def _money_fields(self, record: Target, names: List[str]) -> Dict:
        return {name: str(getattr(record, name).amount) for name in names}

    def _token_to_dict(self, token: Token) -> Dict:
        result = {
            'id': token.id,
            'created_at': token.created_at.isoformat(),
            'updated_at': token.updated_at.isoformat(),
            'token_no': token.token_no,
            'customer_id': token.customer_id,
            'agent_id': token.agent_id,
            'currency': token.principal.currency.code,
            'duration_days': token.duration_days,
            'start_date': token.start_date.isoformat(),
            'end_date': token.end_date.isoformat(),
            'state': token.state.value,
            'batch_id': token.batch_id,
            'closed_date': token.closed_date.isoformat() if token.closed_date else None,
            'issued_by': token.issued_by,
        }
        result.update(self._money_fields(token, ['principal', 'total_amount', 'daily_installment']))
        return result

    def _token_from_dict(self, data: Dict) -> Token:
        currency = Currency[data['currency']]

        def get_money(name: str) -> Money:
            return Money(Decimal(data[name]), currency)

        return Token(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            token_no=data['token_no'],
            customer_id=data['customer_id'],
            agent_id=data['agent_id'],
            principal=get_money('principal'),
            total_amount=get_money('total_amount'),
            daily_installment=get_money('daily_installment'),
            duration_days=data['duration_days'],
            start_date=date.fromisoformat(data['start_date']),
            end_date=date.fromisoformat(data['end_date']),
            state=TokenState(data['state']),
            batch_id=data.get('batch_id'),
            closed_date=date.fromisoformat(data['closed_date']) if data.get('closed_date') else None,
            issued_by=data.get('issued_by'),
        )

    def _batch_to_dict(self, batch: TokenBatch) -> Dict:
        result = {
            'id': batch.id,
            'created_at': batch.created_at.isoformat(),
            'updated_at': batch.updated_at.isoformat(),
            'batch_no': batch.batch_no,
            'customer_id': batch.customer_id,
            'agent_id': batch.agent_id,
            'quantity': batch.quantity,
            'currency': batch.principal.currency.code,
            'duration_days': batch.duration_days,
            'start_date': batch.start_date.isoformat(),
            'end_date': batch.end_date.isoformat(),
            'state': batch.state.value,
            'token_ids': list(batch.token_ids),
            'closed_date': batch.closed_date.isoformat() if batch.closed_date else None,
            'issued_by': batch.issued_by,
        }
        result.update(self._money_fields(batch, [
            'principal', 'total_amount', 'daily_installment',
            'total_daily_amount', 'total_batch_amount'
        ]))
        return result

    def _batch_from_dict(self, data: Dict) -> TokenBatch:
        currency = Currency[data['currency']]

        def get_money(name: str) -> Money:
            return Money(Decimal(data[name]), currency)

        return TokenBatch(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            batch_no=data['batch_no'],
            customer_id=data['customer_id'],
            agent_id=data['agent_id'],
            quantity=data['quantity'],
            principal=get_money('principal'),
            total_amount=get_money('total_amount'),
            daily_installment=get_money('daily_installment'),
            total_daily_amount=get_money('total_daily_amount'),
            total_batch_amount=get_money('total_batch_amount'),
            duration_days=data['duration_days'],
            start_date=date.fromisoformat(data['start_date']),
            end_date=date.fromisoformat(data['end_date']),
            state=TokenState(data['state']),
            token_ids=list(data.get('token_ids', [])),
            closed_date=date.fromisoformat(data['closed_date']) if data.get('closed_date') else None,
            issued_by=data.get('issued_by'),
        )


def daily_amount(total: Money, duration_days: int) -> Money:
    """
    Base daily installment: total / duration rounded down to the currency
    precision, so the last day's remainder is never negative.

    Raises:
        InvalidAmount: the daily amount would round to zero
    """
    quantum = Decimal('0.1') ** total.currency.precision
    amount = (total.amount / Decimal(duration_days)).quantize(quantum, rounding=ROUND_DOWN)
    if amount <= 0:
        raise InvalidAmount(
            f"{total.to_string()} over {duration_days} days is below the smallest daily installment",
            {"total_amount": total, "duration_days": duration_days}
        )
    return Money(amount, total.currency)


def split_installments(total: Money, duration_days: int) -> List[Money]:
    """
    Daily amounts for a schedule: the base daily amount for every day, with
    the last day absorbing the remainder.
    """
    daily = daily_amount(total, duration_days)
    amounts = [daily] * (duration_days - 1)
    amounts.append(total - daily * Decimal(duration_days - 1))
    return amounts


class TokenIssuer:
    """
    Creates tokens and batches with their installment schedules and debits
    the issuing actor's ledger account in the same atomic unit.
    """

    def __init__(
        self,
        storage: StorageInterface,
        token_manager: TokenManager,
        schedule_store: ScheduleStore,
        locks: KeyedLockManager,
        audit_trail: AuditTrail,
        transfers=None
    ):
        self.storage = storage
        self.token_manager = token_manager
        self.schedule_store = schedule_store
        self.locks = locks
        self.audit_trail = audit_trail
        self.transfers = transfers  # None when the ledger capability is disabled
        self.logger = get_logger("token_ledger.issuance")

    def _validate(self, principal: Money, total_amount: Money, duration_days: int,
                  quantity: int = 1) -> None:
        if not principal.is_positive() or not total_amount.is_positive():
            raise InvalidAmount("Principal and total amount must be positive",
                                {"principal": principal, "total_amount": total_amount})
        if total_amount < principal:
            raise InvalidAmount("Total amount cannot be below principal",
                                {"principal": principal, "total_amount": total_amount})
        if duration_days < 1:
            raise InvalidAmount(f"Duration must be at least one day, got {duration_days}",
                                {"duration_days": duration_days})
        daily_amount(total_amount, duration_days)
        if quantity < 1:
            raise InvalidAmount(f"Quantity must be at least one, got {quantity}",
                                {"quantity": quantity})

    def _build_schedule(self, target_type: TargetType, target_id: str, amounts: List[Money],
                        start_date: date, now: datetime) -> List[Installment]:
        installments = []
        for offset, amount in enumerate(amounts):
            number = offset + 1
            installments.append(Installment(
                id=ScheduleStore.make_id(target_type, target_id, number),
                created_at=now,
                updated_at=now,
                target_type=target_type,
                target_id=target_id,
                installment_no=number,
                due_date=start_date + timedelta(days=offset),
                installment_amount=amount
            ))
        return installments

    def _new_token(self, customer_id: str, agent_id: str, principal: Money, total_amount: Money,
                   duration_days: int, start_date: date, issue_date: date, now: datetime,
                   issued_by: ActorRef, batch_id: Optional[str] = None) -> Token:
        return Token(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            token_no=self.token_manager.next_number("TKN", issue_date),
            customer_id=str(customer_id),
            agent_id=str(agent_id),
            principal=principal,
            total_amount=total_amount,
            daily_installment=daily_amount(total_amount, duration_days),
            duration_days=duration_days,
            start_date=start_date,
            end_date=start_date + timedelta(days=duration_days - 1),
            batch_id=batch_id,
            issued_by=issued_by.key
        )

    def _fund(self, issued_by: ActorRef, amount: Money, target_type: TargetType,
              target_id: str, quantity: int) -> Optional[LedgerTransaction]:
        if self.transfers is None:
            return None
        return self.transfers.debit_for_issuance(
            issued_by, amount, target_type.value, target_id, quantity, recorded_by=issued_by.key
        )

    def _lock_keys(self, issued_by: ActorRef) -> List[str]:
        # Account lock is taken before the storage transaction, as in LedgerService
        keys = ["issuance"]
        if self.transfers is not None:
            keys.append(issued_by.key)
        return keys

    def issue_token(
        self,
        customer_id: str,
        agent_id: str,
        principal: Money,
        total_amount: Money,
        duration_days: int,
        start_date: date,
        issued_by: ActorRef,
        issue_date: Optional[date] = None
    ) -> IssuanceResult:
        """
        Issue a single token with one installment per day of its duration.

        Args:
            customer_id: Borrower
            agent_id: Field agent collecting repayments
            principal: Cash handed to the customer
            total_amount: Principal plus the caller's pricing
            duration_days: Number of daily installments
            start_date: Due date of the first installment
            issued_by: Actor whose ledger account funds the token
            issue_date: Date used for numbering (defaults to today)
        """
        self._validate(principal, total_amount, duration_days)
        issue_date = issue_date or date.today()
        now = datetime.now(timezone.utc)

        with self.locks.hold(*self._lock_keys(issued_by)), self.storage.atomic():
            token = self._new_token(customer_id, agent_id, principal, total_amount,
                                    duration_days, start_date, issue_date, now, issued_by)
            installments = self._build_schedule(
                TargetType.TOKEN, token.id, split_installments(total_amount, duration_days),
                start_date, now
            )
            self.token_manager.save_target(token)
            self.schedule_store.add_installments(installments)
            self.audit_trail.log_event(
                event_type=AuditEventType.TOKEN_ISSUED,
                entity_type="token",
                entity_id=token.id,
                metadata={
                    "token_no": token.token_no,
                    "customer_id": token.customer_id,
                    "total_amount": total_amount.amount,
                    "duration_days": duration_days,
                },
                user_id=issued_by.key
            )
            funding = self._fund(issued_by, total_amount, TargetType.TOKEN, token.id, 1)

        log_action(
            self.logger, "info", f"Issued token {token.token_no}",
            user_id=issued_by.key, action="issue_token", resource=f"token:{token.id}",
            extra={"total_amount": str(total_amount.amount), "funded": funding is not None}
        )
        return IssuanceResult(target=token, installments=installments, tokens=[token],
                              funding_transaction=funding)

    def issue_batch(
        self,
        customer_id: str,
        agent_id: str,
        quantity: int,
        principal: Money,
        total_amount: Money,
        duration_days: int,
        start_date: date,
        issued_by: ActorRef,
        issue_date: Optional[date] = None
    ) -> IssuanceResult:
        """
        Issue ``quantity`` identical tokens as one batch. The batch carries the
        combined daily schedule; its child tokens are billed through it.
        principal and total_amount are per token.
        """
        self._validate(principal, total_amount, duration_days, quantity)
        issue_date = issue_date or date.today()
        now = datetime.now(timezone.utc)
        total_batch_amount = total_amount * quantity

        with self.locks.hold(*self._lock_keys(issued_by)), self.storage.atomic():
            batch_id = str(uuid.uuid4())
            tokens = []
            for _ in range(quantity):
                token = self._new_token(customer_id, agent_id, principal, total_amount,
                                        duration_days, start_date, issue_date, now,
                                        issued_by, batch_id=batch_id)
                # Saved one by one so next_number sees the previous token
                self.token_manager.save_target(token)
                tokens.append(token)

            per_token = split_installments(total_amount, duration_days)
            batch = TokenBatch(
                id=batch_id,
                created_at=now,
                updated_at=now,
                batch_no=self.token_manager.next_number("BATCH", issue_date),
                customer_id=str(customer_id),
                agent_id=str(agent_id),
                quantity=quantity,
                principal=principal,
                total_amount=total_amount,
                daily_installment=per_token[0],
                total_daily_amount=per_token[0] * quantity,
                total_batch_amount=total_batch_amount,
                duration_days=duration_days,
                start_date=start_date,
                end_date=start_date + timedelta(days=duration_days - 1),
                token_ids=[t.id for t in tokens],
                issued_by=issued_by.key
            )
            installments = self._build_schedule(
                TargetType.BATCH, batch.id, [amount * quantity for amount in per_token],
                start_date, now
            )
            self.token_manager.save_target(batch)
            self.schedule_store.add_installments(installments)
            self.audit_trail.log_event(
                event_type=AuditEventType.BATCH_ISSUED,
                entity_type="batch",
                entity_id=batch.id,
                metadata={
                    "batch_no": batch.batch_no,
                    "customer_id": batch.customer_id,
                    "quantity": quantity,
                    "total_batch_amount": total_batch_amount.amount,
                },
                user_id=issued_by.key
            )
            funding = self._fund(issued_by, total_batch_amount, TargetType.BATCH, batch.id, quantity)

        log_action(
            self.logger, "info", f"Issued batch {batch.batch_no} of {quantity} tokens",
            user_id=issued_by.key, action="issue_batch", resource=f"batch:{batch.id}",
            extra={"total_batch_amount": str(total_batch_amount.amount),
                   "funded": funding is not None}
        )
        return IssuanceResult(target=batch, installments=installments, tokens=tokens,
                              funding_transaction=funding)
