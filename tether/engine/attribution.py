"""
tether.engine.attribution — Invite-Use Diffing
===============================================

Pure function: given the snapshot taken before a join and the one taken
after it, decide which invite link was used.

Algorithm::

    for code in new (ascending code order):
        if code not in old and new[code].uses >= 1  → selected
        if new[code].uses > old[code].uses          → selected
    → no attribution

The first qualifying code wins and scanning stops.

Known limitation: when two members join through different links between
two polls, both codes qualify and the diff cannot tell which member used
which.  The tie-break is explicit (lowest code first) so the outcome is at
least deterministic, but it can attribute the second member to the wrong
inviter.  Discord does not expose the used invite on the member-join
payload, so there is no better signal to consume here.
"""

from __future__ import annotations

from dataclasses import dataclass

from tether.engine.snapshot import InviteSnapshot

__all__ = ["Attribution", "attribute"]


@dataclass(frozen=True, slots=True)
class Attribution:
    """The invite code a join was traced to, and who created it.

    ``inviter_id`` is ``None`` when Discord did not report an inviter for
    the code (e.g. widget or integration invites).  The pipeline treats
    that the same as no attribution.
    """

    code: str
    inviter_id: int | None


def attribute(old: InviteSnapshot, new: InviteSnapshot) -> Attribution | None:
    """Return the first invite in *new* whose use count went up, or ``None``."""
    for code in sorted(new):
        current = new[code]
        previous = old.get(code)
        if previous is None:
            if current.uses >= 1:
                return Attribution(code=code, inviter_id=current.inviter_id)
            continue
        if current.uses > previous.uses:
            return Attribution(code=code, inviter_id=current.inviter_id)
    return None
