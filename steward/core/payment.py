"""Payment processing workflow with human approval for large amounts.

validate-payment -> approval-step -> process-payment

Payments above the approval threshold suspend at approval-step until a
decision arrives via WorkflowEngine.resume(). A rejection is a normal
business outcome: the run succeeds with status "rejected".
"""

import logging
import time
import uuid
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from steward.core.approval import ApprovalDecision, ApprovalPolicy
from steward.core.state import EventType
from steward.core.workflow import StepContext, Workflow, WorkflowStep

logger = logging.getLogger(__name__)

PAYMENT_WORKFLOW_ID = "payment-approval-workflow"


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class PaymentRequest(_CamelModel):
    amount: float = Field(..., gt=0, allow_inf_nan=False)
    recipient: str = Field(..., min_length=1)
    description: str = Field(..., min_length=1)


class ValidatedPayment(PaymentRequest):
    is_valid: bool
    requires_approval: bool


class ApprovedPayment(_CamelModel):
    amount: float
    recipient: str
    description: str
    approved: bool
    approver_name: str | None = None
    approver_notes: str | None = None


class PaymentResult(_CamelModel):
    status: Literal["processed", "rejected"]
    transaction_id: str | None = None
    amount: float
    recipient: str
    message: str


def generate_transaction_id() -> str:
    return f"TXN-{int(time.time() * 1000)}-{uuid.uuid4().hex[:6].upper()}"


def _format_amount(amount: float) -> str:
    return f"${amount:,.2f}"


def build_payment_workflow(policy: ApprovalPolicy | None = None) -> Workflow:
    """Build the payment workflow bound to an approval policy."""
    policy = policy or ApprovalPolicy()

    def validate_payment(ctx: StepContext) -> ValidatedPayment:
        payment: PaymentRequest = ctx.input_data
        logger.info(f"Validating payment: {_format_amount(payment.amount)} to {payment.recipient}")
        return ValidatedPayment(
            amount=payment.amount,
            recipient=payment.recipient,
            description=payment.description,
            is_valid=True,
            requires_approval=policy.requires_approval(payment.amount),
        )

    def approve_payment(ctx: StepContext) -> ApprovedPayment:
        payment: ValidatedPayment = ctx.input_data

        if not payment.requires_approval:
            logger.info(f"Auto-approved (at or under {_format_amount(policy.threshold)})")
            ctx.record(EventType.APPROVAL_GRANTED, {"approver_name": policy.system_approver})
            return ApprovedPayment(
                amount=payment.amount,
                recipient=payment.recipient,
                description=payment.description,
                approved=True,
                approver_name=policy.system_approver,
            )

        decision: ApprovalDecision | None = ctx.resume_data
        if decision is not None:
            logger.info(
                f"Received approval decision: "
                f"{'APPROVED' if decision.approved else 'REJECTED'} by {decision.approver_name}"
            )
            ctx.record(
                EventType.APPROVAL_GRANTED if decision.approved else EventType.APPROVAL_DENIED,
                {
                    "approver_name": decision.approver_name,
                    "approver_notes": decision.approver_notes,
                },
            )
            return ApprovedPayment(
                amount=payment.amount,
                recipient=payment.recipient,
                description=payment.description,
                approved=decision.approved,
                approver_name=decision.approver_name,
                approver_notes=decision.approver_notes,
            )

        logger.info(
            f"SUSPENDED: waiting for approval of {_format_amount(payment.amount)} "
            f"payment to {payment.recipient}"
        )
        ctx.record(
            EventType.APPROVAL_REQUESTED,
            {
                "amount": payment.amount,
                "recipient": payment.recipient,
                "description": payment.description,
            },
        )
        ctx.suspend({})

    def process_payment(ctx: StepContext) -> PaymentResult:
        payment: ApprovedPayment = ctx.input_data

        if not payment.approved:
            logger.info(f"Payment REJECTED by {payment.approver_name}")
            return PaymentResult(
                status="rejected",
                amount=payment.amount,
                recipient=payment.recipient,
                message=(
                    f"Payment rejected by {payment.approver_name}. "
                    f"{payment.approver_notes or ''}"
                ).strip(),
            )

        transaction_id = generate_transaction_id()
        logger.info(f"Payment processed: {transaction_id} (approved by {payment.approver_name})")
        return PaymentResult(
            status="processed",
            transaction_id=transaction_id,
            amount=payment.amount,
            recipient=payment.recipient,
            message=(
                f"Payment of {_format_amount(payment.amount)} to {payment.recipient} "
                f"processed successfully. Approved by {payment.approver_name}."
            ),
        )

    return (
        Workflow(
            id=PAYMENT_WORKFLOW_ID,
            description="Payment processing with human approval for large amounts",
            input_model=PaymentRequest,
            output_model=PaymentResult,
        )
        .then(
            WorkflowStep(
                id="validate-payment",
                description="Validates incoming payment request",
                input_model=PaymentRequest,
                output_model=ValidatedPayment,
                execute=validate_payment,
            )
        )
        .then(
            WorkflowStep(
                id="approval-step",
                description="Human approval for large payments",
                input_model=ValidatedPayment,
                output_model=ApprovedPayment,
                execute=approve_payment,
                resume_model=ApprovalDecision,
            )
        )
        .then(
            WorkflowStep(
                id="process-payment",
                description="Processes approved payment",
                input_model=ApprovedPayment,
                output_model=PaymentResult,
                execute=process_payment,
            )
        )
    )
