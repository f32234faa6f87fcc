"""
orrery.config — YAML Configuration Loader
==========================================

Reads ``config.yaml`` for everything that is not a secret: the roster of
tracked characters, poll cadence, store location and Discord channel.
Secrets stay in ``.env`` (loaded by python-dotenv in the entry point):

- ``DISCORD_TOKEN``       — bot token (read by ``orrery.bot.__main__``)
- ``WCL_CLIENT_ID``       — Warcraft Logs API client
- ``WCL_CLIENT_SECRET``

Usage::

    from orrery.config import load_config

    cfg = load_config()              # reads ./config.yaml by default
    print(cfg.characters[0])         # arthas-illidan (us)
    print(cfg.raiderio.poll_interval)  # 300.0
"""

from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import timedelta
from pathlib import Path

import yaml

from orrery.engine.records import Character


# ---------------------------------------------------------------------------
# Typed settings objects
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class RaiderIOConfig:
    base_url: str = "https://raider.io"
    user_agent: str = "orrery/0.1"
    poll_interval: float = 300.0  # seconds
    max_concurrent: int = 4
    timeout: float = 30.0


@dataclass(frozen=True, slots=True)
class WarcraftLogsConfig:
    client_id: str = ""
    client_secret: str = ""
    graphql_url: str = "https://www.warcraftlogs.com/api/v2/client"
    token_url: str = "https://www.warcraftlogs.com/oauth/token"
    user_agent: str = "orrery/0.1"

    # Report-window fallback scope; empty guild disables the fallback.
    guild_name: str = ""
    server_slug: str = ""
    server_region: str = ""
    limit: int = 0

    link_interval: float = 300.0  # seconds between unlinked-key sweeps
    match_window_hours: float = 24.0
    run_limit: int = 10

    @property
    def enabled(self) -> bool:
        return bool(self.client_id and self.client_secret)

    @property
    def match_window(self) -> timedelta:
        return timedelta(hours=self.match_window_hours)


@dataclass(frozen=True, slots=True)
class StoreConfig:
    snapshot_path: str = "data/orrery.db"
    flush_debounce: float = 5.0
    shutdown_timeout: float = 30.0
    retention_weeks: int = 4  # 0 disables the weekly archive


@dataclass(frozen=True, slots=True)
class DiscordConfig:
    bot_prefix: str = "!"
    report_channel_id: int | None = None  # where new keys are announced


@dataclass(frozen=True, slots=True)
class OrreryConfig:
    """Immutable configuration loaded from ``config.yaml`` plus env secrets."""

    characters: tuple[Character, ...] = ()
    raiderio: RaiderIOConfig = field(default_factory=RaiderIOConfig)
    warcraftlogs: WarcraftLogsConfig = field(default_factory=WarcraftLogsConfig)
    store: StoreConfig = field(default_factory=StoreConfig)
    discord: DiscordConfig = field(default_factory=DiscordConfig)
    log_level: str = "INFO"


# ---------------------------------------------------------------------------
# Parsing helpers
# ---------------------------------------------------------------------------
def _optional_int(value) -> int | None:
    return int(value) if value else None


def _parse_characters(raw: list | None) -> tuple[Character, ...]:
    characters = []
    for entry in raw or []:
        if not entry.get("name") or not entry.get("realm"):
            raise KeyError(f"character entry needs name and realm: {entry!r}")
        characters.append(
            Character(
                name=str(entry["name"]),
                realm=str(entry["realm"]),
                region=str(entry.get("region", "us")),
            ).normalized()
        )
    return tuple(characters)


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------
def load_config(
    path: str | Path = "config.yaml",
    env: Mapping[str, str] | None = None,
) -> OrreryConfig:
    """Read *path* and return an :class:`OrreryConfig` instance.

    Parameters
    ----------
    path:
        Filesystem path to the YAML configuration file.
    env:
        Where to read secrets from.  Defaults to ``os.environ``.

    Raises
    ------
    FileNotFoundError
        If the YAML file doesn't exist.
    KeyError
        If a character entry lacks its name or realm.
    """
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(
            f"Configuration file not found: {config_path.resolve()}\n"
            "Hint: copy config.yaml.example → config.yaml and edit it."
        )
    if env is None:
        env = os.environ

    with open(config_path, encoding="utf-8") as fh:
        raw: dict = yaml.safe_load(fh) or {}

    rio = raw.get("raiderio") or {}
    wcl = raw.get("warcraftlogs") or {}
    store = raw.get("store") or {}
    disc = raw.get("discord") or {}

    defaults_rio = RaiderIOConfig()
    defaults_wcl = WarcraftLogsConfig()
    defaults_store = StoreConfig()

    return OrreryConfig(
        characters=_parse_characters(raw.get("characters")),
        raiderio=RaiderIOConfig(
            base_url=rio.get("base_url", defaults_rio.base_url),
            user_agent=rio.get("user_agent", defaults_rio.user_agent),
            poll_interval=float(rio.get("poll_interval", defaults_rio.poll_interval)),
            max_concurrent=int(rio.get("max_concurrent", defaults_rio.max_concurrent)),
            timeout=float(rio.get("timeout", defaults_rio.timeout)),
        ),
        warcraftlogs=WarcraftLogsConfig(
            client_id=env.get("WCL_CLIENT_ID") or wcl.get("client_id", ""),
            client_secret=env.get("WCL_CLIENT_SECRET") or wcl.get("client_secret", ""),
            graphql_url=wcl.get("graphql_url", defaults_wcl.graphql_url),
            token_url=wcl.get("token_url", defaults_wcl.token_url),
            user_agent=wcl.get("user_agent", defaults_wcl.user_agent),
            guild_name=wcl.get("guild_name", ""),
            server_slug=wcl.get("server_slug", ""),
            server_region=wcl.get("server_region", ""),
            limit=int(wcl.get("limit", 0)),
            link_interval=float(wcl.get("link_interval", defaults_wcl.link_interval)),
            match_window_hours=float(
                wcl.get("match_window_hours", defaults_wcl.match_window_hours)
            ),
            run_limit=int(wcl.get("run_limit", defaults_wcl.run_limit)),
        ),
        store=StoreConfig(
            snapshot_path=str(store.get("snapshot_path", defaults_store.snapshot_path)),
            flush_debounce=float(store.get("flush_debounce", defaults_store.flush_debounce)),
            shutdown_timeout=float(
                store.get("shutdown_timeout", defaults_store.shutdown_timeout)
            ),
            retention_weeks=int(store.get("retention_weeks", defaults_store.retention_weeks)),
        ),
        discord=DiscordConfig(
            bot_prefix=disc.get("bot_prefix", "!"),
            report_channel_id=_optional_int(disc.get("report_channel_id")),
        ),
        log_level=str(raw.get("log_level", "INFO")).upper(),
    )
