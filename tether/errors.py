"""
tether.errors — Exception Taxonomy
===================================

Every failure the core can raise derives from :class:`TetherError`.

- :class:`DirectoryError` — a Discord fetch or role mutation failed.
  Transient: logged, abandoned for the current pass, and naturally retried
  by the next triggering event or retroactive pass.
- :class:`PersistenceError` — the database rejected a load or save.  Fatal
  for the current pipeline invocation; the transaction is rolled back so
  the last durable state stays intact.
- :class:`ConfigurationError` — ``config.yaml`` is missing required keys or
  declares a malformed rule.

"No attribution" is deliberately *not* an exception: it is a normal
outcome of invite diffing (vanity URL, bot offline during the join).
"""

from __future__ import annotations


class TetherError(Exception):
    """Base class for all Tether errors."""


class DirectoryError(TetherError):
    """A guild directory call (fetch, add role, remove role) failed."""


class PersistenceError(TetherError):
    """Loading or saving ledger/snapshot state failed."""


class ConfigurationError(TetherError):
    """Configuration is malformed or incomplete."""
