"""
rostersync — State Sync & Schema Migration for Alliance Roster Planning
========================================================================
Keeps an alliance planner's in-memory state (player roster, events,
building layouts, profile) in step with a remote multi-tenant document
store.  Rapid edits are coalesced into diff-minimal writes, historical
document shapes are migrated on the fly, image payloads move between
inline and side-record storage, and alliance membership survives
authorization rules that block the direct write path.

Package layout::

    rostersync/
    ├── config.py          # YAML → typed Python config
    ├── constants.py       # Legacy event ids, size bounds, seed layouts
    ├── database/
    │   ├── engine.py      # SQLAlchemy engine + async helper
    │   └── models.py      # The ``documents`` table
    ├── gateway/
    │   ├── errors.py      # GatewayError + ErrorKind
    │   ├── rules.py       # Server-side access policies
    │   └── documents.py   # DocumentGateway, WriteBatch, snapshots
    ├── engine/
    │   ├── schema.py      # Schema normalizer + legacy migration
    │   ├── media.py       # Event media split/merge + side-record store
    │   ├── throttle.py    # Invitation throttle
    │   └── observers.py   # Ordered observer channels
    └── services/
        ├── save_scheduler.py         # Debounced, diff-aware writer
        ├── reconciliation_service.py # Alliance membership reconciler
        ├── alliance_service.py       # Alliance + invitation workflows
        ├── defaults_service.py       # Global defaults publisher
        └── session_service.py        # SyncSession (explicit lifecycle)
"""

__version__ = "0.1.0"
