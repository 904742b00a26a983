"""
Collection Engine

Entry point the surrounding HTTP/CRUD layers call into. Wires storage,
locks, audit, schedule, ledger and the engines from configuration, validates
inbound commands and returns structured result objects.
"""

from datetime import date
from decimal import Decimal
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

from pydantic import BaseModel, ValidationError

from .audit import AuditTrail
from .config import LedgerConfig, get_config
from .currency import Money
from .errors import InvalidAmount, LedgerUnavailable
from .ledger import (
    ActorRef, ActorType, FundingReference, LedgerService, LedgerStore,
    ReconciliationResult, SettlementReference, StorageLedgerStore
)
from .locks import KeyedLockManager
from .logging_config import get_logger, setup_logging
from .payments import AllocationResult, PaymentAllocator
from .penalties import AccrualResult, PenaltyAccrualEngine, PenaltyPolicy, PenaltyPolicyManager
from .schedule import ScheduleStore
from .schemas import (
    FundAccountCommand, IssueTokenCommand, MultiTokenPaymentCommand,
    PenaltyPolicyCommand, RecordPaymentCommand
)
from .storage import StorageInterface, create_storage
from .tokens import IssuanceResult, TokenIssuer, TokenManager
from .transfers import TransferCoordinator, TransferResult


AmountInput = Union[Money, Decimal, str, int]


class CollectionEngine:
    """Repayment ledger engine with all components initialized"""

    def __init__(
        self,
        config: LedgerConfig,
        storage: StorageInterface,
        ledger_store: Optional[LedgerStore] = None
    ):
        self.config = config
        self.currency = config.currency_enum
        self.storage = storage
        self.logger = get_logger("token_ledger.engine")

        self.locks = KeyedLockManager(
            timeout_seconds=config.lock_timeout_seconds,
            retry_attempts=config.lock_retry_attempts
        )
        self.audit_trail = AuditTrail(storage, enabled=config.enable_audit_logging)
        self.schedule_store = ScheduleStore(storage)
        self.token_manager = TokenManager(storage, self.audit_trail)
        self.organization_actor = ActorRef.organization(config.organization_actor_id)

        # Ledger capability is decided once here, never rechecked per call
        self.ledger: Optional[LedgerService] = None
        self.transfers: Optional[TransferCoordinator] = None
        if config.ledger_enabled:
            store = ledger_store or StorageLedgerStore(storage)
            if not isinstance(store, LedgerStore):
                raise TypeError(f"ledger_store must implement LedgerStore, got {type(store).__name__}")
            self.ledger = LedgerService(store, self.locks, self.audit_trail, self.currency)
            self.transfers = TransferCoordinator(self.ledger, self.organization_actor)
        else:
            self.logger.info("Ledger capability disabled; ledger side effects are skipped")

        self.policy_manager = PenaltyPolicyManager(storage, self.audit_trail)
        self.accrual_engine = PenaltyAccrualEngine(
            storage, self.schedule_store, self.token_manager, self.policy_manager,
            self.locks, self.audit_trail
        )
        self.issuer = TokenIssuer(
            storage, self.token_manager, self.schedule_store, self.locks,
            self.audit_trail, transfers=self.transfers
        )
        self.allocator = PaymentAllocator(
            storage, self.schedule_store, self.token_manager, self.locks,
            self.audit_trail, transfers=self.transfers, currency=self.currency
        )

    @property
    def ledger_enabled(self) -> bool:
        return self.ledger is not None

    def _parse(self, command_cls, **data) -> BaseModel:
        try:
            return command_cls(**data)
        except ValidationError as e:
            raise InvalidAmount(
                f"Invalid {command_cls.__name__}: {e.errors()[0]['msg']}",
                {"errors": e.error_count()}
            ) from e

    def _amount(self, value: AmountInput) -> Any:
        if isinstance(value, Money):
            if value.currency != self.currency:
                raise InvalidAmount(
                    f"Amounts must be in {self.currency.code}, got {value.currency.code}",
                    {"amount": value}
                )
            return value.amount
        return value

    @staticmethod
    def _actor(actor: ActorRef) -> Dict[str, str]:
        return {"actor_type": actor.actor_type, "actor_id": actor.actor_id}

    def _money(self, amount: Decimal) -> Money:
        return Money(amount, self.currency)

    def _require_ledger(self) -> None:
        if self.ledger is None:
            raise LedgerUnavailable("Ledger capability is disabled in configuration", {})

    def record_payment(
        self,
        actor: ActorRef,
        target_type,
        target_id: str,
        amount: AmountInput,
        payment_date: date,
        mode: str = "cash",
        waiver_budget: AmountInput = Decimal('0'),
        remarks: Optional[str] = None
    ) -> AllocationResult:
        """Record cash collected by ``actor`` against a token or batch"""
        command = self._parse(
            RecordPaymentCommand,
            actor=self._actor(actor),
            target_type=target_type,
            target_id=target_id,
            amount=self._amount(amount),
            payment_mode=mode,
            payment_date=payment_date,
            waiver_budget=self._amount(waiver_budget),
            remarks=remarks
        )
        return self.allocator.allocate(
            target_type=command.target_type,
            target_id=command.target_id,
            cash_amount=self._money(command.amount),
            payment_date=command.payment_date,
            recorded_by=command.actor.to_actor(),
            penalty_waiver_budget=self._money(command.waiver_budget),
            payment_mode=command.payment_mode,
            remarks=command.remarks
        )

    def record_multi_token_payment(
        self,
        actor: ActorRef,
        customer_id: str,
        allocations: Sequence[Tuple[str, AmountInput]],
        payment_date: date,
        mode: str = "cash",
        remarks: Optional[str] = None
    ) -> AllocationResult:
        """Record one payment split across several tokens of a customer"""
        command = self._parse(
            MultiTokenPaymentCommand,
            actor=self._actor(actor),
            customer_id=customer_id,
            allocations=[
                {"token_id": token_id, "amount": self._amount(amount)}
                for token_id, amount in allocations
            ],
            payment_mode=mode,
            payment_date=payment_date,
            remarks=remarks
        )
        return self.allocator.allocate_multi_token(
            customer_id=command.customer_id,
            token_amounts=[(a.token_id, self._money(a.amount)) for a in command.allocations],
            payment_date=command.payment_date,
            recorded_by=command.actor.to_actor(),
            payment_mode=command.payment_mode,
            remarks=command.remarks
        )

    def run_daily_accrual(self, as_of_date: Optional[date] = None) -> AccrualResult:
        """Apply the active penalty policy as of the given business date"""
        return self.accrual_engine.accrue(as_of_date or date.today())

    def fund_account(
        self,
        from_actor: ActorRef,
        to_actor: ActorRef,
        amount: AmountInput,
        reason: Optional[str] = None,
        recorded_by: Optional[str] = None
    ) -> TransferResult:
        """
        Move money between two ledger accounts. Money flowing back to the
        organization is recorded as a settlement, anything else as funding.
        """
        self._require_ledger()
        command = self._parse(
            FundAccountCommand,
            from_actor=self._actor(from_actor),
            to_actor=self._actor(to_actor),
            amount=self._amount(amount),
            reason=reason
        )
        source = command.from_actor.to_actor()
        destination = command.to_actor.to_actor()
        if destination.actor_type == ActorType.ORGANIZATION:
            reference = SettlementReference(source.key, destination.key, command.reason)
        else:
            reference = FundingReference(source.key, destination.key, command.reason)
        return self.transfers.transfer(
            source, destination, self._money(command.amount), reference,
            recorded_by=recorded_by or source.key, description=command.reason
        )

    def issue_token(self, **kwargs) -> IssuanceResult:
        """Issue a single token; see IssueTokenCommand for the fields"""
        command = self._issue_command(**kwargs)
        if command.quantity != 1:
            raise InvalidAmount("issue_token issues exactly one token; use issue_batch",
                                {"quantity": command.quantity})
        return self.issuer.issue_token(
            customer_id=command.customer_id,
            agent_id=command.agent_id,
            principal=self._money(command.principal),
            total_amount=self._money(command.total_amount),
            duration_days=command.duration_days,
            start_date=command.start_date,
            issued_by=self._issuer_actor(command),
            issue_date=command.issue_date
        )

    def issue_batch(self, **kwargs) -> IssuanceResult:
        """Issue a batch of identical tokens; amounts are per token"""
        command = self._issue_command(**kwargs)
        return self.issuer.issue_batch(
            customer_id=command.customer_id,
            agent_id=command.agent_id,
            quantity=command.quantity,
            principal=self._money(command.principal),
            total_amount=self._money(command.total_amount),
            duration_days=command.duration_days,
            start_date=command.start_date,
            issued_by=self._issuer_actor(command),
            issue_date=command.issue_date
        )

    def _issue_command(self, **kwargs) -> IssueTokenCommand:
        for name in ("principal", "total_amount"):
            if name in kwargs:
                kwargs[name] = self._amount(kwargs[name])
        if isinstance(kwargs.get("issued_by"), ActorRef):
            kwargs["issued_by"] = self._actor(kwargs["issued_by"])
        return self._parse(IssueTokenCommand, **kwargs)

    def _issuer_actor(self, command: IssueTokenCommand) -> ActorRef:
        if command.issued_by is None:
            return self.organization_actor
        return command.issued_by.to_actor()

    def configure_penalty_policy(self, penalty_type, penalty_value, grace_days: int,
                                 activate: bool = True,
                                 user_id: Optional[str] = None) -> PenaltyPolicy:
        command = self._parse(
            PenaltyPolicyCommand,
            penalty_type=penalty_type,
            penalty_value=penalty_value,
            grace_days=grace_days,
            activate=activate
        )
        return self.policy_manager.create_policy(
            command.penalty_type, command.penalty_value, command.grace_days,
            activate=command.activate, user_id=user_id
        )

    def get_balance(self, actor: ActorRef) -> Money:
        self._require_ledger()
        return self.ledger.get_balance(actor)

    def reconcile_accounts(self) -> List[ReconciliationResult]:
        """Reconcile every ledger account against its transaction log"""
        self._require_ledger()
        results = [self.ledger.reconcile(account.actor) for account in self.ledger.list_accounts()]
        unbalanced = [r.account_id for r in results if not r.balanced]
        if unbalanced:
            self.logger.warning(f"Unbalanced ledger accounts: {', '.join(unbalanced)}")
        return results

    def verify_audit_trail(self) -> Dict[str, Any]:
        return self.audit_trail.verify_integrity()

    def close(self) -> None:
        self.storage.close()


def build_engine(
    config: Optional[LedgerConfig] = None,
    storage: Optional[StorageInterface] = None,
    ledger_store: Optional[LedgerStore] = None,
    configure_logging: bool = False
) -> CollectionEngine:
    """
    Build a CollectionEngine from configuration.

    Args:
        config: Engine configuration (defaults to the global config)
        storage: Storage backend (defaults to one built from config.database_url)
        ledger_store: Alternative LedgerStore sharing ``storage``
        configure_logging: Install the structured log handler from config
    """
    config = config or get_config()
    if configure_logging:
        setup_logging(config.log_level, log_format=config.log_format, log_file=config.log_file)
    if storage is None:
        storage = create_storage(config.database_url, lock_timeout=config.lock_timeout_seconds)
    return CollectionEngine(config, storage, ledger_store=ledger_store)
