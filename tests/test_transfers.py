"""
Tests for the transfer coordinator
"""

import pytest
import logging
from decimal import Decimal

from token_ledger.audit import AuditTrail, AuditEventType
from token_ledger.currency import Money, Currency
from token_ledger.errors import InsufficientBalance
from token_ledger.ledger import (
    ActorRef, LedgerService, ManualAdjustmentReference, StorageLedgerStore
)
from token_ledger.locks import KeyedLockManager
from token_ledger.storage import InMemoryStorage
from token_ledger.transfers import TransferCoordinator


def inr(value) -> Money:
    return Money(Decimal(str(value)), Currency.INR)


class FailingCreditLedger(LedgerService):
    """Ledger whose credits always fail"""

    def credit(self, *args, **kwargs):
        raise RuntimeError("ledger store offline")


class TestTransferCoordinator:
    """Atomic debit plus credit between accounts"""

    def setup_method(self):
        self.storage = InMemoryStorage()
        self.audit = AuditTrail(self.storage)
        self.ledger = LedgerService(StorageLedgerStore(self.storage), KeyedLockManager(), self.audit)
        self.organization = ActorRef.organization("1")
        self.agent = ActorRef.agent("7")
        self.transfers = TransferCoordinator(self.ledger, self.organization)
        self.ledger.credit(self.organization, inr(1000), ManualAdjustmentReference("opening float"))

    def test_fund_agent_moves_money(self):
        result = self.transfers.fund_agent(self.agent, inr(300), reason="morning float",
                                           recorded_by="admin:1")

        assert self.ledger.get_balance(self.organization) == inr(700)
        assert self.ledger.get_balance(self.agent) == inr(300)
        assert result.debit.reference_type == "funding"
        assert result.credit.reference.to_account == "agent:7"
        assert result.to_dict()["to_balance_after"] == "300.00"
        assert len(self.audit.get_events_by_type(AuditEventType.TRANSFER_COMPLETED)) == 1

    def test_failed_debit_leaves_both_accounts_untouched(self):
        with pytest.raises(InsufficientBalance):
            self.transfers.settle_to_organization(self.agent, inr(50))

        assert self.ledger.get_balance(self.organization) == inr(1000)
        assert self.ledger.get_balance(self.agent) == inr(0)
        assert self.ledger.get_transactions(self.organization)[-1].amount == inr(1000)

    def test_failed_credit_rolls_back_debit(self):
        failing = FailingCreditLedger(self.ledger.store, self.ledger.locks, self.audit)
        transfers = TransferCoordinator(failing, self.organization)

        with pytest.raises(RuntimeError):
            transfers.fund_agent(self.agent, inr(100))

        assert self.ledger.get_balance(self.organization) == inr(1000)
        assert len(self.ledger.get_transactions(self.organization)) == 1

    def test_settlement_returns_cash(self):
        self.transfers.fund_agent(self.agent, inr(300))
        result = self.transfers.settle_to_organization(self.agent, inr(120), reason="evening")

        assert result.credit.reference_type == "settlement"
        assert self.ledger.get_balance(self.agent) == inr(180)
        assert self.ledger.get_balance(self.organization) == inr(820)

    def test_manual_adjustments(self):
        self.transfers.manual_credit(self.agent, inr(50), "cash found in drawer", recorded_by="admin:1")
        debit = self.transfers.manual_debit(self.agent, inr(20), "shortfall", recorded_by="admin:1")

        assert debit.reference_type == "manual_adjustment"
        assert debit.reference_id is None
        assert debit.description == "shortfall"
        assert self.ledger.get_balance(self.agent) == inr(30)

        with pytest.raises(InsufficientBalance):
            self.transfers.manual_debit(self.agent, inr(31), "too much")

    def test_transfer_to_self_is_rejected(self):
        with pytest.raises(ValueError, match="itself"):
            self.transfers.transfer(self.agent, self.agent, inr(1),
                                    ManualAdjustmentReference("loop"))

    def test_issuance_debit_proceeds_on_insufficient_balance(self, caplog):
        with caplog.at_level(logging.WARNING, logger="token_ledger.transfers"):
            transaction = self.transfers.debit_for_issuance(
                self.agent, inr(500), "token", "T1", recorded_by="agent:7"
            )

        assert transaction is None
        assert self.ledger.get_balance(self.agent) == inr(0)
        assert any("without funding debit" in r.getMessage() for r in caplog.records)

    def test_issuance_debit_with_funds(self):
        transaction = self.transfers.debit_for_issuance(
            self.organization, inr(400), "batch", "B1", quantity=4
        )
        assert transaction.reference.quantity == 4
        assert self.ledger.get_balance(self.organization) == inr(600)

    def test_collection_credit_failure_is_reported_not_raised(self, caplog):
        failing = FailingCreditLedger(self.ledger.store, self.ledger.locks, self.audit)
        transfers = TransferCoordinator(failing, self.organization)

        with caplog.at_level(logging.ERROR, logger="token_ledger.transfers"):
            credited = transfers.credit_collection(self.agent, inr(50), "pay-1", "token", "T1")

        assert credited is False
        assert any("pay-1" in r.getMessage() for r in caplog.records)

    def test_collection_credit(self):
        assert self.transfers.credit_collection(self.agent, inr(50), "pay-1", "token", "T1")
        transaction = self.ledger.get_transactions(self.agent)[-1]
        assert transaction.reference_type == "collection"
        assert transaction.reference_id == "pay-1"
