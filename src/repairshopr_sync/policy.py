"""
Technician Policy Filter

Decides whether a fetched ticket is in scope for its source. Each source has
its own staffing, so rules are evaluated per source instance. Every decision
names the rule that matched, so exclusions can be explained in sync logs.
"""

from dataclasses import dataclass, field
from typing import Mapping

import structlog

from repairshopr_sync.config import PolicySettings

logger = structlog.get_logger(__name__)


# Rule names reported on decisions
RULE_WORKSHOP_DENIED = "workshop_denied"
RULE_UNASSIGNED = "unassigned"
RULE_NO_RESTRICTION = "no_restriction"
RULE_ALLOWED = "allowed_technician"
RULE_NOT_ALLOWED = "not_in_allow_list"
RULE_DENIED = "denied_technician"
RULE_UNKNOWN_SOURCE = "unknown_source"


def _fold(name: str | None) -> str:
    return " ".join((name or "").split()).casefold()


@dataclass(frozen=True)
class TechnicianPolicy:
    """Scoping rules for one source. An empty allow-list means no restriction."""
    allowed_technicians: frozenset[str] = frozenset()
    denied_technicians: frozenset[str] = frozenset()
    denied_workshops: frozenset[str] = frozenset()
    # Workshop/location name -> technician the ticket is credited to
    workshop_assignments: Mapping[str, str] = field(default_factory=dict)

    @classmethod
    def create(
        cls,
        allowed_technicians=(),
        denied_technicians=(),
        denied_workshops=(),
        workshop_assignments: Mapping[str, str] | None = None,
    ) -> "TechnicianPolicy":
        """Build a policy with case-insensitive name sets."""
        return cls(
            allowed_technicians=frozenset(_fold(n) for n in allowed_technicians if n),
            denied_technicians=frozenset(_fold(n) for n in denied_technicians if n),
            denied_workshops=frozenset(_fold(n) for n in denied_workshops if n),
            workshop_assignments={
                _fold(k): v.strip() for k, v in (workshop_assignments or {}).items()
            },
        )


@dataclass(frozen=True)
class PolicyDecision:
    in_scope: bool
    rule: str
    # Effective technician after any workshop reassignment
    technician: str | None = None


class PolicyFilter:
    """
    Per-source allow/deny evaluation.

    Order: workshop deny-list (matched against assignee and location), then
    workshop reassignment, then allow-list, then deny-list. Unassigned
    tickets stay in scope; sources without a policy are open.

    Example:
        pf = PolicyFilter({"platinum": TechnicianPolicy.create(["Thasveer"])})
        pf.is_in_scope("platinum", "Thasveer")   # True
        pf.is_in_scope("platinum", "Someone")    # False
    """

    def __init__(self, policies: Mapping[str, TechnicianPolicy] | None = None):
        self._policies = {k.lower(): v for k, v in (policies or {}).items()}

    @classmethod
    def from_settings(cls, policies: Mapping[str, PolicySettings]) -> "PolicyFilter":
        return cls({
            source: TechnicianPolicy.create(
                p.allowed_technicians,
                p.denied_technicians,
                p.denied_workshops,
                p.workshop_assignments,
            )
            for source, p in policies.items()
        })

    def policy_for(self, source: str) -> TechnicianPolicy | None:
        return self._policies.get(source.lower())

    def evaluate(
        self,
        source: str,
        technician: str | None,
        location: str | None = None,
    ) -> PolicyDecision:
        technician = technician.strip() if technician and technician.strip() else None
        policy = self.policy_for(source)
        if policy is None:
            return PolicyDecision(True, RULE_UNKNOWN_SOURCE, technician)

        tech_key = _fold(technician)
        location_key = _fold(location)

        if policy.denied_workshops and (
            tech_key in policy.denied_workshops or location_key in policy.denied_workshops
        ):
            return PolicyDecision(False, RULE_WORKSHOP_DENIED, technician)

        # Tickets parked under a workshop pseudo-user are credited to a real technician
        reassigned = policy.workshop_assignments.get(tech_key) or policy.workshop_assignments.get(
            location_key
        )
        if reassigned:
            technician = reassigned
            tech_key = _fold(reassigned)

        if technician is None:
            return PolicyDecision(True, RULE_UNASSIGNED, None)

        if policy.allowed_technicians:
            if tech_key not in policy.allowed_technicians:
                return PolicyDecision(False, RULE_NOT_ALLOWED, technician)
            rule = RULE_ALLOWED
        else:
            rule = RULE_NO_RESTRICTION

        if tech_key in policy.denied_technicians:
            return PolicyDecision(False, RULE_DENIED, technician)

        return PolicyDecision(True, rule, technician)

    def is_in_scope(self, source: str, technician: str | None) -> bool:
        return self.evaluate(source, technician).in_scope
