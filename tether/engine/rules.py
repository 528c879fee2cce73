"""
tether.engine.rules — Reward Role Rules
========================================

Pure evaluation engine.  No Discord I/O, no DB I/O.

Two rule kinds:

* :class:`PerInviteeRule` — the inviter deserves ``reward_role`` while
  **at least one** present invitee holds **any** of ``required_roles``.
* :class:`ThresholdRule` — the inviter deserves ``reward_role`` while the
  number of present invitees holding any of ``required_roles`` is
  ``>= threshold``.

Pipeline::

    configured rules → resolve_rules() → evaluate_rules() → desired_roles()

Role references resolve by id first and fall back to the role name.  A
rule whose reward role (or every required role) cannot be resolved is
skipped with a warning; the remaining rules still evaluate.

Several rules may target the same reward role.  That is a configuration
hazard: rules are folded in order and the **last** one decides.
"""

from __future__ import annotations

import enum
import logging
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass

from tether.constants import DEFAULT_THRESHOLD
from tether.engine.directory import MemberState

logger = logging.getLogger(__name__)

__all__ = [
    "PerInviteeRule",
    "ResolvedRule",
    "RoleRef",
    "RuleKind",
    "RuleOutcome",
    "ThresholdRule",
    "desired_roles",
    "evaluate_rules",
    "resolve_rules",
]

# (guild_id, role_id, name) → role_id | None
RoleResolver = Callable[[int, "int | None", "str | None"], "int | None"]


class RuleKind(enum.StrEnum):
    PER_INVITEE = "per_invitee"
    THRESHOLD = "threshold"


# ---------------------------------------------------------------------------
# Configured (unresolved) rules
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class RoleRef:
    """Points at a guild role by id, by name, or both (id wins)."""

    id: int | None = None
    name: str | None = None

    def __str__(self) -> str:
        if self.id is not None and self.name:
            return f"{self.name} ({self.id})"
        return str(self.id) if self.id is not None else str(self.name)


@dataclass(frozen=True, slots=True)
class PerInviteeRule:
    reward_role: RoleRef
    required_roles: tuple[RoleRef, ...]

    kind = RuleKind.PER_INVITEE


@dataclass(frozen=True, slots=True)
class ThresholdRule:
    reward_role: RoleRef
    required_roles: tuple[RoleRef, ...]
    threshold: int = DEFAULT_THRESHOLD

    kind = RuleKind.THRESHOLD


Rule = PerInviteeRule | ThresholdRule


# ---------------------------------------------------------------------------
# Resolved rules and outcomes
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class ResolvedRule:
    """A rule whose role references have been turned into guild role ids."""

    kind: RuleKind
    reward_role_id: int
    required_role_ids: frozenset[int]
    threshold: int = 1

    def is_satisfied(self, qualifying: int) -> bool:
        if self.kind is RuleKind.PER_INVITEE:
            return qualifying >= 1
        return qualifying >= self.threshold


@dataclass(frozen=True, slots=True)
class RuleOutcome:
    reward_role_id: int
    desired: bool
    qualifying: int


def resolve_rules(
    guild_id: int, rules: Iterable[Rule], resolver: RoleResolver,
) -> list[ResolvedRule]:
    """Resolve every rule's role references for *guild_id*.

    Rules that cannot be resolved are skipped with a warning.
    """
    resolved: list[ResolvedRule] = []
    for rule in rules:
        reward_id = resolver(guild_id, rule.reward_role.id, rule.reward_role.name)
        if reward_id is None:
            logger.warning(
                "Reward role %s not found in guild %d — skipping %s rule",
                rule.reward_role, guild_id, rule.kind,
            )
            continue

        required: set[int] = set()
        for ref in rule.required_roles:
            role_id = resolver(guild_id, ref.id, ref.name)
            if role_id is None:
                logger.warning(
                    "Required role %s not found in guild %d", ref, guild_id,
                )
                continue
            required.add(role_id)

        if not required:
            logger.warning(
                "No required roles resolved for reward role %s in guild %d — "
                "skipping %s rule",
                rule.reward_role, guild_id, rule.kind,
            )
            continue

        threshold = rule.threshold if isinstance(rule, ThresholdRule) else 1
        resolved.append(ResolvedRule(
            kind=rule.kind,
            reward_role_id=reward_id,
            required_role_ids=frozenset(required),
            threshold=threshold,
        ))
    return resolved


def evaluate_rules(
    invitees: Sequence[MemberState], rules: Sequence[ResolvedRule],
) -> list[RuleOutcome]:
    """Evaluate *rules* against an inviter's **present** invitees.

    Callers pass only invitees that are still in the guild; anyone who left
    or could not be fetched simply does not count.
    """
    outcomes: list[RuleOutcome] = []
    for rule in rules:
        qualifying = sum(
            1 for member in invitees if member.has_any_role(rule.required_role_ids)
        )
        outcomes.append(RuleOutcome(
            reward_role_id=rule.reward_role_id,
            desired=rule.is_satisfied(qualifying),
            qualifying=qualifying,
        ))
    return outcomes


def desired_roles(outcomes: Iterable[RuleOutcome]) -> dict[int, bool]:
    """Fold outcomes into ``{reward_role_id: should_hold}``, last rule wins.

    Every role in the result is governed by at least one evaluated rule;
    roles not in the result are never touched by the reconciler.
    """
    desired: dict[int, bool] = {}
    for outcome in outcomes:
        desired[outcome.reward_role_id] = outcome.desired
    return desired
