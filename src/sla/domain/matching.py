"""
SLA Rule Matching
=================

Selects the single SLA rule that applies to a ticket.

Selection order:
1. Only ACTIVE rules whose predicates all match are candidates
2. A VIP-override rule among the candidates beats every non-VIP rule
3. Lowest ``priority_order`` wins
4. Ties: earliest ``created_at`` wins, then lowest rule id, so the most
   recently created rule loses
"""

from typing import Iterable, List, Tuple

from src.core.exceptions import NoMatchingRuleError
from src.sla.domain.entities import SlaRule
from src.sla.domain.value_objects import TicketContext
from src.config import WILDCARD


class SlaRuleMatcher:
    """Stateless matcher over a rule set."""

    @staticmethod
    def matches(rule: SlaRule, context: TicketContext) -> bool:
        """True if every predicate of ``rule`` accepts the ticket."""
        if not rule.is_active:
            return False

        # VIP-override rules exist for VIP users only
        if rule.is_vip_override and not context.is_vip:
            return False

        if rule.asset_categories and WILDCARD not in rule.asset_categories:
            if not {c.lower() for c in context.asset_categories} & rule.asset_categories:
                return False

        return (
            SlaRule.accepts(rule.asset_importance, context.highest_asset_importance)
            and SlaRule.accepts(rule.user_categories, context.user_category)
            and SlaRule.accepts(rule.ticket_types, context.ticket_type)
            and SlaRule.accepts(rule.ticket_channels, context.channel)
            and SlaRule.accepts(rule.priorities, context.priority)
        )

    @staticmethod
    def _sort_key(rule: SlaRule) -> Tuple:
        return (
            0 if rule.is_vip_override else 1,
            rule.priority_order,
            rule.created_at,
            rule.id,
        )

    @classmethod
    def candidates(cls, context: TicketContext, rules: Iterable[SlaRule]) -> List[SlaRule]:
        """All matching rules, best first."""
        return sorted(
            (rule for rule in rules if cls.matches(rule, context)),
            key=cls._sort_key
        )

    @classmethod
    def match(cls, context: TicketContext, rules: Iterable[SlaRule]) -> SlaRule:
        """
        Return the applicable rule.

        Raises:
            NoMatchingRuleError: if no active rule matches
        """
        ranked = cls.candidates(context, rules)
        if not ranked:
            raise NoMatchingRuleError(
                context.ticket_id,
                {
                    "ticket_id": context.ticket_id,
                    "priority": context.priority,
                    "ticket_type": context.ticket_type,
                    "channel": context.channel,
                    "is_vip": context.is_vip,
                }
            )
        return ranked[0]

    @staticmethod
    def explain(context: TicketContext, rule: SlaRule) -> str:
        """Human-readable reason a rule was selected."""
        if rule.is_vip_override and context.is_vip:
            return f"VIP override ({rule.name})"

        reasons = [f"priority_order={rule.priority_order}"]
        if rule.priorities and WILDCARD not in rule.priorities:
            reasons.append(f"priority={context.priority}")
        if rule.ticket_channels and WILDCARD not in rule.ticket_channels:
            reasons.append(f"channel={context.channel}")
        if rule.ticket_types and WILDCARD not in rule.ticket_types:
            reasons.append(f"type={context.ticket_type}")
        if rule.asset_importance and WILDCARD not in rule.asset_importance:
            reasons.append(f"asset_importance={context.highest_asset_importance}")
        if rule.user_categories and WILDCARD not in rule.user_categories:
            reasons.append(f"user_category={context.user_category}")
        return ", ".join(reasons)
