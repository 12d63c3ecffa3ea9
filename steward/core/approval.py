"""Approval policy and decisions for human-in-the-loop payments."""

import logging
from dataclasses import dataclass
from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

logger = logging.getLogger(__name__)


@dataclass
class ApprovalPolicy:
    """Policy for determining when a payment needs a human decision."""

    # Amounts strictly above the threshold require approval
    threshold: float = 1000.0

    # Identity recorded when a payment is auto-approved
    system_approver: str = "System"

    def requires_approval(self, amount: float) -> bool:
        return amount > self.threshold


class ApprovalDecision(BaseModel):
    """Resume payload for a suspended approval step.

    Wire format is camelCase: {approved, approverName, approverNotes?}.
    """

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    approved: bool
    approver_name: str = Field(..., min_length=1)
    approver_notes: str | None = None


def prompt_for_decision(context: dict[str, Any]) -> ApprovalDecision:
    """Interactive CLI approval. SYNCHRONOUS.

    Shows the pending payment and asks the operator to decide.
    """
    from rich.console import Console
    from rich.prompt import Confirm, Prompt

    console = Console()
    console.print("\n[bold red]Approval Required[/bold red]")
    console.print(f"Amount: [bold]{context.get('amount')}[/bold]")
    console.print(f"Recipient: {context.get('recipient')}")
    console.print(f"Description: {context.get('description')}")

    approved = Confirm.ask("Approve?", default=False)
    approver_name = Prompt.ask("Approver name")
    notes = Prompt.ask("Notes (optional)", default="")

    decision = ApprovalDecision(
        approved=approved,
        approver_name=approver_name,
        approver_notes=notes or None,
    )
    logger.info(
        f"Interactive decision: {'APPROVED' if approved else 'REJECTED'} by {approver_name}"
    )
    return decision
