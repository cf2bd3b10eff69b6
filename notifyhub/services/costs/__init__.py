from __future__ import annotations

# Re-export cost services for centralized imports.

from notifyhub.services.costs.budget_guardrails import WARNING_BUDGET, BudgetDecision, BudgetGuardrail
from notifyhub.services.costs.ledger import SMS_SEGMENT_CHARS, CostLedger, SpendSummary, billable_units

__all__ = [
    "WARNING_BUDGET",
    "BudgetDecision",
    "BudgetGuardrail",
    "SMS_SEGMENT_CHARS",
    "CostLedger",
    "SpendSummary",
    "billable_units",
]
