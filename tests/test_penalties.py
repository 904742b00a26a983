"""
Test suite for penalty policies and daily accrual

Covers the grace period, the fixed and percent rules, the different penalty
base of partially paid rows, parent overdue flagging and idempotence.
"""

import pytest
from datetime import date, timedelta
from decimal import Decimal

from token_ledger.config import LedgerConfig
from token_ledger.currency import Money, Currency
from token_ledger.errors import InvalidAmount, NoActivePolicy
from token_ledger.ledger import ActorRef
from token_ledger.penalties import PenaltyType
from token_ledger.schedule import InstallmentStatus, TargetType
from token_ledger.service import build_engine
from token_ledger.storage import InMemoryStorage
from token_ledger.tokens import TokenState


def inr(value) -> Money:
    return Money(Decimal(str(value)), Currency.INR)


AS_OF = date(2024, 3, 10)


class TestPenaltyPolicyManager:
    """Single active policy"""

    def setup_method(self):
        self.engine = build_engine(LedgerConfig(), storage=InMemoryStorage())
        self.policies = self.engine.policy_manager

    def test_activating_one_deactivates_others(self):
        first = self.policies.create_policy(PenaltyType.FIXED, Decimal("20"), 1)
        second = self.policies.create_policy(PenaltyType.PERCENT, Decimal("5"), 2)

        assert self.policies.get_active_policy().id == second.id
        assert not self.policies.get_policy(first.id).is_active

        self.policies.activate_policy(first.id)
        active = [p for p in self.policies.list_policies() if p.is_active]
        assert [p.id for p in active] == [first.id]

    def test_inactive_policy_creation(self):
        self.policies.create_policy(PenaltyType.FIXED, Decimal("20"), 1, activate=False)
        assert self.policies.get_active_policy() is None

    def test_negative_values_are_rejected(self):
        with pytest.raises(InvalidAmount):
            self.policies.create_policy(PenaltyType.FIXED, Decimal("-1"), 1)
        with pytest.raises(InvalidAmount):
            self.policies.create_policy(PenaltyType.FIXED, Decimal("1"), -1)
        with pytest.raises(InvalidAmount):
            self.engine.configure_penalty_policy("percent", "-3", 0)

    def test_percent_penalty_rounds_half_up(self):
        policy = self.policies.create_policy(PenaltyType.PERCENT, Decimal("2.5"), 0)
        assert policy.penalty_for(inr("33.30")) == inr("0.83")
        assert policy.penalty_for(inr("100")) == inr("2.50")


class TestPenaltyAccrual:
    """Daily accrual pass"""

    def setup_method(self):
        self.engine = build_engine(LedgerConfig(ledger_enabled=False), storage=InMemoryStorage())
        self.agent = ActorRef.agent("7")

    def issue(self, start_date, total="300", days=3, customer_id="C1"):
        return self.engine.issue_token(
            customer_id=customer_id, agent_id="7", principal=inr(total),
            total_amount=inr(total), duration_days=days, start_date=start_date
        ).target

    def rows(self, token):
        return self.engine.schedule_store.get_installments(TargetType.TOKEN, token.id)

    def test_requires_active_policy(self):
        with pytest.raises(NoActivePolicy):
            self.engine.run_daily_accrual(AS_OF)

    def test_percent_penalty_on_never_paid_row(self):
        self.engine.configure_penalty_policy("percent", "10", 2)
        token = self.issue(AS_OF - timedelta(days=5), days=1, total="100")

        result = self.engine.run_daily_accrual(AS_OF)

        row = self.rows(token)[0]
        assert row.penalty_amount == inr(10)
        assert row.total_due == inr(110)
        assert row.status == InstallmentStatus.OVERDUE
        assert result.installments_processed == 1
        assert result.total_penalty_added == Decimal("10.00")
        assert result.loans_flagged_overdue == 1
        assert self.engine.token_manager.get_token(token.id).state == TokenState.OVERDUE

    def test_grace_period_boundary(self):
        self.engine.configure_penalty_policy("fixed", "25", 2)
        token = self.issue(AS_OF - timedelta(days=3), days=4)

        self.engine.run_daily_accrual(AS_OF)

        statuses = [(r.due_date, r.status, r.penalty_amount) for r in self.rows(token)]
        # 3 days late: penalised; 2 days late: inside grace; 1 day late and due today: untouched
        assert statuses[0] == (AS_OF - timedelta(days=3), InstallmentStatus.OVERDUE, inr(25))
        for _, status, penalty in statuses[1:]:
            assert status == InstallmentStatus.PENDING
            assert penalty == inr(0)

    def test_fixed_penalty_ignores_amount(self):
        self.engine.configure_penalty_policy("fixed", "15", 0)
        token = self.issue(AS_OF - timedelta(days=2), days=2, total="1000")

        self.engine.run_daily_accrual(AS_OF)

        for row in self.rows(token):
            assert row.penalty_amount == inr(15)
            assert row.total_due == inr(515)

    def test_partial_row_penalised_on_remaining_amount(self):
        start = AS_OF - timedelta(days=5)
        token = self.issue(start, days=3)
        self.engine.record_payment(self.agent, "token", token.id, inr(50), payment_date=start)
        self.engine.configure_penalty_policy("percent", "10", 0)

        result = self.engine.run_daily_accrual(AS_OF)

        first, second, third = self.rows(token)
        assert first.penalty_amount == inr(5)           # 10% of the 50 still unpaid
        assert first.total_due == inr(105)
        assert first.status == InstallmentStatus.OVERDUE
        assert second.penalty_amount == inr(10)         # 10% of the installment
        assert third.penalty_amount == inr(10)
        assert result.installments_processed == 3
        assert result.loans_flagged_overdue == 1

    def test_partial_row_alone_does_not_flag_parent(self):
        start = AS_OF - timedelta(days=5)
        token = self.issue(start, days=1, total="100")
        self.engine.record_payment(self.agent, "token", token.id, inr(40), payment_date=start)
        self.engine.configure_penalty_policy("percent", "10", 0)

        result = self.engine.run_daily_accrual(AS_OF)

        assert result.installments_processed == 1
        assert result.loans_flagged_overdue == 0
        assert self.engine.token_manager.get_token(token.id).state == TokenState.ACTIVE

    def test_accrual_is_idempotent(self):
        self.engine.configure_penalty_policy("percent", "10", 1)
        token = self.issue(AS_OF - timedelta(days=6), days=5)

        self.engine.run_daily_accrual(AS_OF)
        before = self.engine.storage.load_all("installments")
        second = self.engine.run_daily_accrual(AS_OF)
        after = self.engine.storage.load_all("installments")

        assert second.installments_processed == 0
        assert second.total_penalty_added == Decimal("0")
        assert second.loans_flagged_overdue == 0
        strip = lambda rows: sorted(
            ({k: v for k, v in r.items() if k != "updated_at"} for r in rows),
            key=lambda r: r["id"])
        assert strip(before) == strip(after)
        assert self.engine.token_manager.get_token(token.id).state == TokenState.OVERDUE

    def test_parent_flagged_only_once(self):
        self.engine.configure_penalty_policy("fixed", "5", 0)
        self.issue(AS_OF - timedelta(days=4), days=3)

        result = self.engine.run_daily_accrual(AS_OF)
        assert result.installments_processed == 3
        assert result.loans_flagged_overdue == 1

    def test_closed_targets_are_skipped(self):
        self.engine.configure_penalty_policy("fixed", "5", 0)
        token = self.issue(AS_OF - timedelta(days=4), days=2)
        with self.engine.storage.atomic():
            self.engine.token_manager.close_target(token, AS_OF)

        result = self.engine.run_daily_accrual(AS_OF)

        assert result.installments_processed == 0
        assert all(r.status == InstallmentStatus.PENDING for r in self.rows(token))

    def test_batch_rows_flag_the_batch(self):
        self.engine.configure_penalty_policy("percent", "10", 0)
        batch = self.engine.issue_batch(
            customer_id="C1", agent_id="7", quantity=2, principal=inr(100),
            total_amount=inr(100), duration_days=2, start_date=AS_OF - timedelta(days=3)
        ).target

        result = self.engine.run_daily_accrual(AS_OF)

        rows = self.engine.schedule_store.get_installments(TargetType.BATCH, batch.id)
        assert [r.penalty_amount for r in rows] == [inr(10), inr(10)]
        assert result.loans_flagged_overdue == 1
        assert self.engine.token_manager.get_batch(batch.id).state == TokenState.OVERDUE
