"""
Pydantic schemas for inbound engine commands
"""

from decimal import Decimal
from datetime import date
from typing import List, Optional
from pydantic import BaseModel, Field

from .ledger import ActorRef, ActorType
from .payments import PaymentMode
from .penalties import PenaltyType
from .schedule import TargetType


class ActorModel(BaseModel):
    actor_type: ActorType = Field(..., description="organization or agent")
    actor_id: str

    def to_actor(self) -> ActorRef:
        return ActorRef(self.actor_type, self.actor_id)


class RecordPaymentCommand(BaseModel):
    actor: ActorModel
    target_type: TargetType = Field(..., description="token or batch")
    target_id: str
    amount: Decimal = Field(..., gt=0, description="Cash received")
    payment_mode: PaymentMode = PaymentMode.CASH
    payment_date: date
    waiver_budget: Decimal = Field(Decimal('0'), ge=0, description="Penalty the collector may waive")
    remarks: Optional[str] = None


class TokenAmountModel(BaseModel):
    token_id: str
    amount: Decimal = Field(..., gt=0)


class MultiTokenPaymentCommand(BaseModel):
    actor: ActorModel
    customer_id: str
    allocations: List[TokenAmountModel] = Field(..., min_length=1)
    payment_mode: PaymentMode = PaymentMode.CASH
    payment_date: date
    remarks: Optional[str] = None


class FundAccountCommand(BaseModel):
    from_actor: ActorModel
    to_actor: ActorModel
    amount: Decimal = Field(..., gt=0)
    reason: Optional[str] = None


class IssueTokenCommand(BaseModel):
    customer_id: str
    agent_id: str
    principal: Decimal = Field(..., gt=0, description="Cash handed to the customer, per token")
    total_amount: Decimal = Field(..., gt=0, description="Amount repayable, per token")
    duration_days: int = Field(..., ge=1)
    start_date: date
    quantity: int = Field(1, ge=1)
    issued_by: Optional[ActorModel] = None  # Defaults to the organization actor
    issue_date: Optional[date] = None


class PenaltyPolicyCommand(BaseModel):
    penalty_type: PenaltyType
    penalty_value: Decimal = Field(..., ge=0)
    grace_days: int = Field(..., ge=0)
    activate: bool = True
