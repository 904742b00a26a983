"""
Transfer Coordinator Module

Moves money between two ledger accounts as one atomic debit plus credit, and
hosts the ledger side effects of issuance and collection.
"""

from dataclasses import dataclass
from typing import Dict, Optional

from .audit import AuditEventType
from .currency import Money
from .errors import InsufficientBalance
from .ledger import (
    ActorRef, LedgerService, LedgerTransaction, LedgerReference,
    CollectionReference, FundingReference, SettlementReference,
    TokenCreationReference, ManualAdjustmentReference
)
from .logging_config import get_logger, log_action


@dataclass
class TransferResult:
    """Both legs of a completed transfer"""
    debit: LedgerTransaction
    credit: LedgerTransaction

    @property
    def amount(self) -> Money:
        return self.debit.amount

    def to_dict(self) -> Dict:
        return {
            'from_account': self.debit.account_id,
            'to_account': self.credit.account_id,
            'amount': str(self.amount.amount),
            'from_balance_after': str(self.debit.balance_after.amount),
            'to_balance_after': str(self.credit.balance_after.amount),
            'debit_transaction_id': self.debit.id,
            'credit_transaction_id': self.credit.id,
        }


class TransferCoordinator:
    """
    Coordinates multi-account ledger movements. The organization actor comes
    from configuration and is never inferred.
    """

    def __init__(self, ledger: LedgerService, organization_actor: ActorRef):
        self.ledger = ledger
        self.organization_actor = organization_actor
        self.logger = get_logger("token_ledger.transfers")

    def transfer(
        self,
        from_actor: ActorRef,
        to_actor: ActorRef,
        amount: Money,
        reference: LedgerReference,
        recorded_by: Optional[str] = None,
        description: Optional[str] = None
    ) -> TransferResult:
        """
        Debit from_actor and credit to_actor in one atomic unit.

        Raises:
            InsufficientBalance: from_actor cannot cover amount; neither
                account changes
        """
        if from_actor == to_actor:
            raise ValueError(f"Cannot transfer from {from_actor.key} to itself")

        with self.ledger.locks.hold(from_actor.key, to_actor.key), self.ledger.store.atomic():
            debit = self.ledger.debit(from_actor, amount, reference, recorded_by, description)
            credit = self.ledger.credit(to_actor, amount, reference, recorded_by, description)
            self.ledger.audit_trail.log_event(
                event_type=AuditEventType.TRANSFER_COMPLETED,
                entity_type="ledger_account",
                entity_id=from_actor.key,
                metadata={
                    "to_account": to_actor.key,
                    "amount": amount.amount,
                    "reference_type": reference.reference_type,
                    "debit_transaction_id": debit.id,
                    "credit_transaction_id": credit.id,
                },
                user_id=recorded_by
            )

        log_action(
            self.logger, "info",
            f"Transferred {amount.to_string()} from {from_actor.key} to {to_actor.key}",
            user_id=recorded_by, action="transfer", resource=f"ledger_account:{from_actor.key}",
            extra={"to_account": to_actor.key, "reference_type": reference.reference_type}
        )
        return TransferResult(debit=debit, credit=credit)

    def fund_agent(self, agent: ActorRef, amount: Money, reason: Optional[str] = None,
                   recorded_by: Optional[str] = None) -> TransferResult:
        """Organization hands float to an agent"""
        reference = FundingReference(self.organization_actor.key, agent.key, reason)
        return self.transfer(self.organization_actor, agent, amount, reference,
                             recorded_by, description=reason)

    def settle_to_organization(self, agent: ActorRef, amount: Money, reason: Optional[str] = None,
                               recorded_by: Optional[str] = None) -> TransferResult:
        """Agent hands collected cash back to the organization"""
        reference = SettlementReference(agent.key, self.organization_actor.key, reason)
        return self.transfer(agent, self.organization_actor, amount, reference,
                             recorded_by, description=reason)

    def manual_credit(self, actor: ActorRef, amount: Money, reason: str,
                      recorded_by: Optional[str] = None) -> LedgerTransaction:
        return self.ledger.credit(actor, amount, ManualAdjustmentReference(reason),
                                  recorded_by, description=reason)

    def manual_debit(self, actor: ActorRef, amount: Money, reason: str,
                     recorded_by: Optional[str] = None) -> LedgerTransaction:
        return self.ledger.debit(actor, amount, ManualAdjustmentReference(reason),
                                 recorded_by, description=reason)

    def debit_for_issuance(
        self,
        issuer: ActorRef,
        amount: Money,
        target_type: str,
        target_id: str,
        quantity: int = 1,
        recorded_by: Optional[str] = None
    ) -> Optional[LedgerTransaction]:
        """
        Debit the issuer for a new token or batch. An insufficient balance is
        logged and the issuance goes ahead without a debit.
        """
        reference = TokenCreationReference(target_type, target_id, quantity)
        try:
            return self.ledger.debit(
                issuer, amount, reference, recorded_by,
                description=f"Issued {quantity} {target_type}(s)"
            )
        except InsufficientBalance as e:
            log_action(
                self.logger, "warning",
                f"Issuing {target_type} {target_id} without funding debit: {e.message}",
                user_id=recorded_by, action="issuance_debit_skipped",
                resource=f"{target_type}:{target_id}",
                extra={"account_id": issuer.key, "amount": str(amount.amount)}
            )
            return None

    def credit_collection(
        self,
        collector: ActorRef,
        amount: Money,
        payment_id: str,
        target_type: str,
        target_id: str,
        recorded_by: Optional[str] = None
    ) -> bool:
        """
        Credit collected cash to the collector's account after the payment has
        committed. Failures are logged and reported, never raised.
        """
        reference = CollectionReference(payment_id, target_type, target_id)
        try:
            self.ledger.credit(collector, amount, reference, recorded_by,
                               description=f"Collection for {target_type} {target_id}")
            return True
        except Exception as e:
            log_action(
                self.logger, "error",
                f"Ledger credit for payment {payment_id} failed: {e}",
                user_id=recorded_by, action="collection_credit_failed",
                resource=f"ledger_account:{collector.key}",
                extra={"payment_id": payment_id, "amount": str(amount.amount)},
                exc_info=True
            )
            return False
