"""
rostersync.config — YAML Configuration Loader
==============================================

Reads ``config.yaml`` for the sync engine's tunables (debounce window,
invitation policy, the account that owns the shared default layouts).
Infrastructure secrets such as ``DATABASE_URL`` stay in ``.env`` and are
read by :mod:`rostersync.database.engine`.

Usage::

    from rostersync.config import load_config

    cfg = load_config()              # reads ./config.yaml by default
    print(cfg.save_debounce_ms)      # 250
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

import yaml

from rostersync.constants import DEFAULT_LEGACY_EVENT_ID


# ---------------------------------------------------------------------------
# Typed settings object
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class SyncConfig:
    """Immutable configuration loaded from ``config.yaml``.

    Every field has a default so a session can be built without a file
    (tests, scripts).  Only ``defaults_owner_email`` is meaningful to set
    in production.
    """

    # Account allowed to publish the shared default layouts
    defaults_owner_email: str = ""

    # Save scheduler quiet period
    save_debounce_ms: int = 250

    # Invitation throttle
    free_invites: int = 3
    invite_cooldown_seconds: int = 60

    # Pre-event-scoped documents migrate into this event
    legacy_event_id: str = DEFAULT_LEGACY_EVENT_ID

    @property
    def save_debounce_seconds(self) -> float:
        return self.save_debounce_ms / 1000.0


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------
def load_config(path: str | Path = "config.yaml") -> SyncConfig:
    """Read *path* and return a :class:`SyncConfig` instance.

    Parameters
    ----------
    path:
        Filesystem path to the YAML configuration file.
        Defaults to ``config.yaml`` in the current working directory.

    Raises
    ------
    FileNotFoundError
        If the YAML file doesn't exist.
    ValueError
        If a numeric setting is negative.
    """
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(
            f"Configuration file not found: {config_path.resolve()}\n"
            "Hint: copy config.yaml.example → config.yaml and edit it."
        )

    with open(config_path, encoding="utf-8") as fh:
        raw: dict = yaml.safe_load(fh) or {}

    defaults = SyncConfig()
    cfg = SyncConfig(
        defaults_owner_email=str(raw.get("defaults_owner_email") or "").strip().lower(),
        save_debounce_ms=int(raw.get("save_debounce_ms", defaults.save_debounce_ms)),
        free_invites=int(raw.get("free_invites", defaults.free_invites)),
        invite_cooldown_seconds=int(
            raw.get("invite_cooldown_seconds", defaults.invite_cooldown_seconds)
        ),
        legacy_event_id=str(raw.get("legacy_event_id") or defaults.legacy_event_id),
    )
    for name in ("save_debounce_ms", "free_invites", "invite_cooldown_seconds"):
        if getattr(cfg, name) < 0:
            raise ValueError(f"{name} must be >= 0 (got {getattr(cfg, name)})")
    return cfg
