"""
Providers domain package.

Public API:
- Domain models: Provider, ProviderKind, RankedCandidate
- Selection: filter_eligible_providers, select_candidates, escalation_radius
- Policy: SelectionPolicy
"""
from .models import Provider, ProviderKind, RankedCandidate
from .policy import SelectionPolicy, default_selection_policy, delivery_selection_policy
from .selection import escalation_radius, filter_eligible_providers, select_candidates

__all__ = [
    "Provider",
    "ProviderKind",
    "RankedCandidate",
    "SelectionPolicy",
    "default_selection_policy",
    "delivery_selection_policy",
    "escalation_radius",
    "filter_eligible_providers",
    "select_candidates",
]
