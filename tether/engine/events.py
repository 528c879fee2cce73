"""
tether.engine.events — Typed Guild Events
==========================================

The event envelope consumed by the per-guild reconciliation loop.
Discord gateway callbacks are normalized into one of these dataclasses
before they reach :class:`~tether.services.invite_service.InviteRewardService`.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import datetime
from typing import ClassVar

__all__ = [
    "EventKind",
    "GuildEvent",
    "InviteCreated",
    "InviteDeleted",
    "MemberJoined",
    "MemberLeft",
    "MemberRolesChanged",
]


class EventKind(enum.StrEnum):
    """Every event type that flows through the invite pipeline."""
    MEMBER_JOINED = "MEMBER_JOINED"
    MEMBER_LEFT = "MEMBER_LEFT"
    MEMBER_ROLES_CHANGED = "MEMBER_ROLES_CHANGED"
    INVITE_CREATED = "INVITE_CREATED"
    INVITE_DELETED = "INVITE_DELETED"


@dataclass(frozen=True, slots=True)
class GuildEvent:
    """Common envelope: every event is scoped to exactly one guild."""

    guild_id: int
    received_at: datetime = field(default_factory=datetime.now, kw_only=True)
    kind: ClassVar[EventKind]


@dataclass(frozen=True, slots=True)
class MemberJoined(GuildEvent):
    user_id: int
    kind: ClassVar[EventKind] = EventKind.MEMBER_JOINED


@dataclass(frozen=True, slots=True)
class MemberLeft(GuildEvent):
    user_id: int
    kind: ClassVar[EventKind] = EventKind.MEMBER_LEFT


@dataclass(frozen=True, slots=True)
class MemberRolesChanged(GuildEvent):
    user_id: int
    old_roles: frozenset[int] = frozenset()
    new_roles: frozenset[int] = frozenset()
    kind: ClassVar[EventKind] = EventKind.MEMBER_ROLES_CHANGED


@dataclass(frozen=True, slots=True)
class InviteCreated(GuildEvent):
    code: str
    inviter_id: int | None = None
    kind: ClassVar[EventKind] = EventKind.INVITE_CREATED


@dataclass(frozen=True, slots=True)
class InviteDeleted(GuildEvent):
    code: str
    inviter_id: int | None = None
    kind: ClassVar[EventKind] = EventKind.INVITE_DELETED
