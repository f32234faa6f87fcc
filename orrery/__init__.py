"""
Orrery — Weekly Mythic+ Key Tracker for Discord
================================================
Watches a roster of World of Warcraft characters, detects their weekly
Mythic+ key completions on Raider.IO, links each completion to the
matching Warcraft Logs fight, and keeps everything in a durable store.

Package layout::

    orrery/
    ├── config.py          # YAML → typed Python config
    ├── errors.py          # Error taxonomy shared by every layer
    ├── engine/
    │   ├── epoch.py       # Weekly reset cutoff + timestamp helpers
    │   ├── records.py     # Domain dataclasses + synthetic key IDs
    │   └── matching.py    # Filter chain + confidence scoring (pure)
    ├── database/
    │   ├── engine.py      # In-memory SQLAlchemy engine, migrations, backup
    │   ├── models.py      # ORM models (characters, keys, links, archive)
    │   ├── flush.py       # Debounced flush actor
    │   ├── store.py       # KeyStore: the transactional record store
    │   └── migrations/    # Ordered, idempotent SQL applied at every open
    ├── clients/
    │   ├── ports.py       # ProfileSource / LogSource / NotificationSink
    │   ├── raiderio.py    # Raider.IO profile client (httpx)
    │   └── warcraftlogs.py  # Warcraft Logs GraphQL client (httpx)
    ├── services/
    │   ├── key_poller.py  # Per-character polling actors
    │   ├── linker.py      # Key ↔ log correlation orchestration
    │   ├── link_service.py  # Background sweep of unlinked keys
    │   └── character_service.py  # One-shot sync / purge
    └── bot/
        ├── core.py        # Bot subclass, lifecycle wiring
        ├── notifier.py    # Discord-backed NotificationSink
        └── cogs/tasks.py  # Periodic link sweep + weekly archive
"""

__version__ = "0.1.0"
