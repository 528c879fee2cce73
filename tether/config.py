"""
tether.config — YAML Configuration Loader
==========================================

**Why this file exists:**
This module reads ``config.yaml`` for the bot's soft settings (admin role,
log channel, retroactive schedule) and, most importantly, the reward
rules.  Secrets (``DISCORD_TOKEN``, ``DATABASE_URL``) stay in ``.env``.

Rule syntax::

    per_invitee_rules:
      - reward_role: {id: 1111, name: "Recruiter"}
        required_roles: [{name: "Verified"}, 2222]

    threshold_rules:
      - reward_role: "Top Recruiter"
        required_roles: ["Verified"]
        threshold: 3

A role reference may be a mapping with ``id`` and/or ``name``, a bare
integer (id) or a bare string (name).  Resolution tries the id first and
falls back to the name.

Usage::

    from tether.config import load_config

    cfg = load_config()          # reads ./config.yaml by default
    print(cfg.rules)             # per-invitee rules first, then thresholds
"""

from __future__ import annotations

import logging
from collections import Counter
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import yaml

from tether.constants import DEFAULT_RETROACTIVE_INTERVAL_HOURS, DEFAULT_THRESHOLD
from tether.engine.rules import PerInviteeRule, RoleRef, Rule, ThresholdRule
from tether.errors import ConfigurationError

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Typed settings object
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class TetherConfig:
    """Immutable configuration loaded from ``config.yaml``."""

    # Identity
    bot_name: str = "Tether"
    bot_prefix: str = "!"

    # Admin commands: this role, plus Administrator / Manage Guild holders
    admin_role_id: int | None = None

    # Discord channel that mirrors the bot's log output
    log_channel_id: int | None = None

    # Retroactive pass cadence
    retroactive_interval_hours: float = DEFAULT_RETROACTIVE_INTERVAL_HOURS

    # Optional JSON file mirror of the ledger summary
    summary_path: str | None = None

    # Rules
    per_invitee_rules: tuple[PerInviteeRule, ...] = ()
    threshold_rules: tuple[ThresholdRule, ...] = ()

    @property
    def rules(self) -> tuple[Rule, ...]:
        """All rules in evaluation order: per-invitee first, then thresholds."""
        return (*self.per_invitee_rules, *self.threshold_rules)


# ---------------------------------------------------------------------------
# Parsing helpers
# ---------------------------------------------------------------------------
def parse_role_ref(raw: Any) -> RoleRef:
    """Turn a YAML role reference into a :class:`RoleRef`."""
    if isinstance(raw, bool):
        raise ConfigurationError(f"Invalid role reference: {raw!r}")
    if isinstance(raw, int):
        return RoleRef(id=raw)
    if isinstance(raw, str):
        if raw.isdigit():
            return RoleRef(id=int(raw))
        return RoleRef(name=raw)
    if isinstance(raw, dict):
        role_id = raw.get("id")
        name = raw.get("name")
        if role_id is None and not name:
            raise ConfigurationError(f"Role reference needs an id or a name: {raw!r}")
        try:
            return RoleRef(
                id=int(role_id) if role_id is not None else None,
                name=str(name) if name else None,
            )
        except (TypeError, ValueError) as exc:
            raise ConfigurationError(f"Invalid role id in {raw!r}") from exc
    raise ConfigurationError(f"Invalid role reference: {raw!r}")


def _parse_required(raw: dict, index: int, section: str) -> tuple[RoleRef, ...]:
    required = raw.get("required_roles")
    if required is None:
        raise ConfigurationError(f"{section}[{index}] is missing 'required_roles'")
    if not isinstance(required, list):
        required = [required]
    if not required:
        raise ConfigurationError(f"{section}[{index}] has an empty 'required_roles'")
    return tuple(parse_role_ref(r) for r in required)


def _parse_reward(raw: Any, index: int, section: str) -> RoleRef:
    if not isinstance(raw, dict) or "reward_role" not in raw:
        raise ConfigurationError(f"{section}[{index}] is missing 'reward_role'")
    return parse_role_ref(raw["reward_role"])


def _parse_per_invitee(entry: Any, index: int) -> PerInviteeRule:
    return PerInviteeRule(
        reward_role=_parse_reward(entry, index, "per_invitee_rules"),
        required_roles=_parse_required(entry, index, "per_invitee_rules"),
    )


def _parse_threshold(entry: Any, index: int) -> ThresholdRule:
    reward = _parse_reward(entry, index, "threshold_rules")
    try:
        threshold = int(entry.get("threshold", DEFAULT_THRESHOLD))
    except (TypeError, ValueError) as exc:
        raise ConfigurationError(
            f"threshold_rules[{index}] has a non-integer threshold"
        ) from exc
    if threshold < 1:
        raise ConfigurationError(
            f"threshold_rules[{index}] threshold must be positive, got {threshold}"
        )
    return ThresholdRule(
        reward_role=reward,
        required_roles=_parse_required(entry, index, "threshold_rules"),
        threshold=threshold,
    )


def parse_rules(raw: dict) -> tuple[tuple[PerInviteeRule, ...], tuple[ThresholdRule, ...]]:
    """Parse the ``per_invitee_rules`` and ``threshold_rules`` sections.

    A malformed entry is skipped with a warning; the remaining rules load.
    """
    per_invitee: list[PerInviteeRule] = []
    for i, entry in enumerate(raw.get("per_invitee_rules") or []):
        try:
            per_invitee.append(_parse_per_invitee(entry, i))
        except ConfigurationError as exc:
            logger.warning("Skipping per_invitee_rules[%d]: %s", i, exc)

    thresholds: list[ThresholdRule] = []
    for i, entry in enumerate(raw.get("threshold_rules") or []):
        try:
            thresholds.append(_parse_threshold(entry, i))
        except ConfigurationError as exc:
            logger.warning("Skipping threshold_rules[%d]: %s", i, exc)

    shared = [
        ref for ref, n in Counter(
            r.reward_role for r in (*per_invitee, *thresholds)
        ).items() if n > 1
    ]
    for ref in shared:
        logger.warning(
            "Reward role %s is driven by more than one rule; the last rule "
            "evaluated decides whether it is held", ref,
        )

    return tuple(per_invitee), tuple(thresholds)


def _optional_int(raw: dict, key: str) -> int | None:
    value = raw.get(key)
    if value in (None, ""):
        return None
    try:
        return int(value)
    except (TypeError, ValueError) as exc:
        raise ConfigurationError(f"'{key}' must be an integer, got {value!r}") from exc


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------
def config_from_dict(raw: dict | None) -> TetherConfig:
    """Build a :class:`TetherConfig` from an already-parsed mapping."""
    raw = raw or {}
    if not isinstance(raw, dict):
        raise ConfigurationError("config.yaml must contain a mapping at the top level")

    per_invitee, thresholds = parse_rules(raw)
    try:
        interval = float(
            raw.get("retroactive_interval_hours", DEFAULT_RETROACTIVE_INTERVAL_HOURS)
        )
    except (TypeError, ValueError) as exc:
        raise ConfigurationError("'retroactive_interval_hours' must be a number") from exc
    if interval <= 0:
        raise ConfigurationError("'retroactive_interval_hours' must be positive")

    return TetherConfig(
        bot_name=str(raw.get("bot_name", "Tether")),
        bot_prefix=str(raw.get("bot_prefix", "!")),
        admin_role_id=_optional_int(raw, "admin_role_id"),
        log_channel_id=_optional_int(raw, "log_channel_id"),
        retroactive_interval_hours=interval,
        summary_path=raw.get("summary_path") or None,
        per_invitee_rules=per_invitee,
        threshold_rules=thresholds,
    )


def load_config(path: str | Path = "config.yaml") -> TetherConfig:
    """Read *path* and return a :class:`TetherConfig` instance.

    Raises
    ------
    FileNotFoundError
        If the YAML file doesn't exist.
    ConfigurationError
        If the YAML is unreadable or a global setting is malformed.
    """
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(
            f"Configuration file not found: {config_path.resolve()}\n"
            "Hint: copy config.yaml.example → config.yaml and edit it."
        )

    with open(config_path, encoding="utf-8") as fh:
        try:
            raw = yaml.safe_load(fh)
        except yaml.YAMLError as exc:
            raise ConfigurationError(f"Could not parse {config_path}: {exc}") from exc

    return config_from_dict(raw)
