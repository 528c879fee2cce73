"""
Tether — Invite Attribution & Reward Roles for Discord
=======================================================
Works out which invite link each new member joined through, keeps a
durable ledger of who invited whom, and grants or revokes reward roles
for inviters according to configurable rules.

Package layout::

    tether/
    ├── config.py          # YAML → typed config + reward rules
    ├── constants.py       # Shared defaults and message chunking
    ├── errors.py          # Exception taxonomy
    ├── database/
    │   ├── engine.py      # SQLAlchemy engine + async helper
    │   └── models.py      # Ledger, invite snapshot, state documents
    ├── engine/
    │   ├── events.py      # Typed guild events
    │   ├── snapshot.py    # Invite snapshots
    │   ├── attribution.py # Old/new snapshot diff → inviter
    │   ├── ledger.py      # Inviter → invitees ledger
    │   ├── rules.py       # Per-invitee and threshold rules
    │   ├── reconciler.py  # Desired roles → role mutations
    │   └── directory.py   # GuildDirectory protocol
    ├── services/
    │   ├── invite_service.py  # Pipeline owner (join/leave/admin/retroactive)
    │   ├── dispatcher.py      # Per-guild event queues
    │   ├── persistence.py     # Atomic load/save gateway
    │   └── log_mirror.py      # Discord log-channel mirror
    └── bot/
        ├── core.py        # Bot subclass, cog loader
        ├── directory.py   # discord.py GuildDirectory
        └── cogs/
            ├── invites.py # Gateway events → event queue
            ├── admin.py   # /add-invite, /remove-invite, /list-invites, /reconcile-invites
            └── tasks.py   # Periodic retroactive pass
"""

__version__ = "0.1.0"
