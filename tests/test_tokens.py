"""
Test suite for token and batch issuance

Tests numbering, schedule generation, the issuer's funding debit and closure
of batches together with their child tokens.
"""

import pytest
from datetime import date, timedelta
from decimal import Decimal

from token_ledger.audit import AuditEventType
from token_ledger.config import LedgerConfig
from token_ledger.currency import Money, Currency
from token_ledger.errors import InvalidAmount, TargetNotFound
from token_ledger.ledger import ActorRef, ManualAdjustmentReference
from token_ledger.schedule import InstallmentStatus, TargetType
from token_ledger.service import build_engine
from token_ledger.storage import InMemoryStorage
from token_ledger.tokens import TokenState, split_installments


def inr(value) -> Money:
    return Money(Decimal(str(value)), Currency.INR)


class TestSplitInstallments:
    def test_even_split(self):
        assert split_installments(inr(300), 3) == [inr(100)] * 3

    def test_last_day_absorbs_rounding(self):
        amounts = split_installments(inr(100), 3)
        assert amounts == [inr("33.33"), inr("33.33"), inr("33.34")]
        assert sum((a.amount for a in amounts), Decimal("0")) == Decimal("100.00")

    def test_long_duration_never_goes_negative(self):
        amounts = split_installments(inr(100), 160)
        assert amounts[0] == inr("0.62")
        assert amounts[-1] == inr("1.42")
        assert all(a.is_positive() for a in amounts)
        assert sum((a.amount for a in amounts), Decimal("0")) == Decimal("100.00")

    @pytest.mark.parametrize("total,days", [("1000", 7), ("999.99", 365), ("5", 499), ("120", 90)])
    def test_rows_are_positive_and_sum_to_total(self, total, days):
        amounts = split_installments(inr(total), days)
        assert len(amounts) == days
        assert all(a.is_positive() for a in amounts)
        assert sum((a.amount for a in amounts), Decimal("0")) == inr(total).amount

    def test_daily_amount_below_one_paisa_is_rejected(self):
        with pytest.raises(InvalidAmount):
            split_installments(inr("1.00"), 300)


class TestTokenIssuance:
    """Single token issuance"""

    def setup_method(self):
        self.engine = build_engine(LedgerConfig(), storage=InMemoryStorage())
        self.organization = self.engine.organization_actor
        self.engine.ledger.credit(self.organization, inr(10000), ManualAdjustmentReference("capital"))
        self.start = date(2024, 3, 1)

    def issue(self, **overrides):
        params = dict(customer_id="C1", agent_id="7", principal=inr(1000),
                      total_amount=inr(1200), duration_days=30, start_date=self.start,
                      issue_date=date(2024, 2, 29))
        params.update(overrides)
        return self.engine.issue_token(**params)

    def test_issue_token_creates_daily_schedule(self):
        result = self.issue()
        token = result.target

        assert token.token_no == "TKN-20240229-0001"
        assert token.state == TokenState.ACTIVE
        assert token.daily_installment == inr(40)
        assert token.end_date == self.start + timedelta(days=29)
        assert len(result.installments) == 30

        schedule = self.engine.schedule_store.get_installments(TargetType.TOKEN, token.id)
        assert [i.due_date for i in schedule][:2] == [date(2024, 3, 1), date(2024, 3, 2)]
        assert all(i.status == InstallmentStatus.PENDING for i in schedule)
        assert all(i.installment_amount == inr(40) for i in schedule)

    def test_token_numbers_increase_per_day(self):
        first = self.issue().target
        second = self.issue().target
        other_day = self.issue(issue_date=date(2024, 3, 1)).target

        assert first.token_no == "TKN-20240229-0001"
        assert second.token_no == "TKN-20240229-0002"
        assert other_day.token_no == "TKN-20240301-0001"

    def test_customer_tokens(self):
        first = self.issue().target
        second = self.issue().target
        self.issue(customer_id="C2")

        tokens = self.engine.token_manager.get_customer_tokens("C1")
        assert [t.id for t in tokens] == [first.id, second.id]

    def test_long_token_closes_after_contracted_total(self):
        token = self.issue(principal=inr(100), total_amount=inr(100), duration_days=160).target

        result = self.engine.record_payment(ActorRef.agent("7"), "token", token.id, inr(100),
                                            payment_date=self.start + timedelta(days=159))

        assert result.amount_applied == inr(100)
        assert result.amount_unapplied == inr(0)
        assert result.closed
        assert self.engine.token_manager.get_token(token.id).state == TokenState.CLOSED

    def test_too_small_daily_installment_is_rejected(self):
        with pytest.raises(InvalidAmount):
            self.issue(principal=inr(1), total_amount=inr(1), duration_days=300)
        assert self.engine.storage.count("tokens") == 0
        assert self.engine.storage.count("installments") == 0

    def test_issuer_is_debited_total_value(self):
        result = self.issue()

        assert result.funded
        assert result.funding_transaction.reference_type == "token_creation"
        assert self.engine.get_balance(self.organization) == inr(8800)

    def test_issuance_proceeds_without_funds(self):
        agent = ActorRef.agent("7")
        result = self.issue(issued_by=agent)

        assert not result.funded
        assert self.engine.get_balance(agent) == inr(0)
        assert self.engine.token_manager.get_token(result.target.id) is not None

    def test_invalid_amounts_are_rejected(self):
        with pytest.raises(InvalidAmount):
            self.issue(principal=inr(0))
        with pytest.raises(InvalidAmount):
            self.issue(total_amount=inr(900))
        with pytest.raises(InvalidAmount):
            self.issue(duration_days=0)
        assert self.engine.storage.count("tokens") == 0

    def test_issuance_is_audited(self):
        token = self.issue().target
        events = self.engine.audit_trail.get_events_for_entity("token", token.id)
        assert events[0].event_type == AuditEventType.TOKEN_ISSUED


class TestBatchIssuance:
    """Batches are billed through one combined schedule"""

    def setup_method(self):
        self.engine = build_engine(LedgerConfig(), storage=InMemoryStorage())
        self.organization = self.engine.organization_actor
        self.engine.ledger.credit(self.organization, inr(10000), ManualAdjustmentReference("capital"))

    def issue_batch(self, quantity=5):
        return self.engine.issue_batch(
            customer_id="C1", agent_id="7", quantity=quantity, principal=inr(500),
            total_amount=inr(600), duration_days=10, start_date=date(2024, 3, 1),
            issue_date=date(2024, 3, 1)
        )

    def test_batch_totals_and_schedule(self):
        result = self.issue_batch()
        batch = result.target

        assert batch.batch_no == "BATCH-20240301-0001"
        assert batch.total_batch_amount == inr(3000)
        assert batch.total_daily_amount == inr(300)
        assert len(result.tokens) == 5
        assert len(result.installments) == 10
        assert all(i.installment_amount == inr(300) for i in result.installments)
        assert [t.token_no for t in result.tokens][-1] == "TKN-20240301-0005"

        for token in result.tokens:
            assert token.batch_id == batch.id
            assert self.engine.schedule_store.get_installments(TargetType.TOKEN, token.id) == []

    def test_batch_debits_quantity_times_total(self):
        result = self.issue_batch(quantity=5)
        assert result.funding_transaction.amount == inr(3000)
        assert result.funding_transaction.reference.quantity == 5
        assert self.engine.get_balance(self.organization) == inr(7000)

    def test_close_batch_closes_children(self):
        batch = self.issue_batch(quantity=3).target

        with self.engine.storage.atomic():
            closed = self.engine.token_manager.close_target(batch, date(2024, 3, 10))

        assert len(closed) == 4
        assert self.engine.token_manager.get_batch(batch.id).state == TokenState.CLOSED
        for token in self.engine.token_manager.get_batch_tokens(batch.id):
            assert token.state == TokenState.CLOSED
            assert token.closed_date == date(2024, 3, 10)

    def test_missing_target(self):
        with pytest.raises(TargetNotFound):
            self.engine.token_manager.require_target(TargetType.BATCH, "nope")
