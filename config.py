#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Settings from the environment (and a .env file next to the bot).

ENV:
- BOT_TOKEN
- ADMIN_IDS="11111,22222" (Telegram user IDs for admins)
- PANEL_URL, PANEL_USERNAME, PANEL_PASSWORD, PANEL_LIMIT_IP
- RATE_LIMIT_REQUESTS, RATE_LIMIT_WINDOW (seconds)
- STATE_TTL_HOURS, CLEANUP_INTERVAL (seconds)
- EXPIRY_WARN_DAYS="3,1" (empty turns warnings off), NOTIFY_INTERVAL (seconds)
- PRICE_30, PRICE_90, PRICE_180, PRICE_365, PAYMENT_DETAILS, INSTRUCTIONS_URL
- LOG_LEVEL
"""

import os
from dataclasses import dataclass, field
from typing import Dict, FrozenSet, Optional, Tuple

from dotenv import load_dotenv

from views import DURATIONS


class ConfigError(RuntimeError):
    pass


@dataclass(frozen=True)
class Settings:
    bot_token: str
    admin_ids: FrozenSet[int]
    panel_url: str = ""
    panel_username: str = ""
    panel_password: str = ""
    panel_limit_ip: int = 0
    rate_limit_requests: int = 10
    rate_limit_window: float = 60.0
    state_ttl: float = 24 * 60 * 60
    cleanup_interval: float = 60 * 60
    expiry_warn_days: Tuple[int, ...] = (3, 1)
    notify_interval: float = 60 * 60
    prices: Dict[int, int] = field(default_factory=dict)
    payment_details: str = ""
    instructions_url: str = ""
    log_level: str = "INFO"


def parse_admin_ids(raw: Optional[str]) -> FrozenSet[int]:
    ids = (raw or "").strip()
    if not ids:
        return frozenset()
    return frozenset(int(x.strip()) for x in ids.split(",") if x.strip().isdigit())


def parse_warn_days(raw: Optional[str]) -> Tuple[int, ...]:
    if raw is None:
        return (3, 1)
    days = {int(x.strip()) for x in raw.split(",") if x.strip().isdigit()}
    return tuple(sorted((d for d in days if d > 0), reverse=True))


def _int(name: str, default: int) -> int:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        raise ConfigError(f"{name} must be an integer, got {raw!r}")
    return value if value > 0 else default


def _price(days: int) -> int:
    raw = (os.getenv(f"PRICE_{days}") or "").strip()
    return int(raw) if raw.isdigit() else 0


def load_settings(dotenv: bool = True) -> Settings:
    if dotenv:
        load_dotenv()
    tok = os.getenv("BOT_TOKEN", "").strip()
    if not tok:
        raise ConfigError("BOT_TOKEN missing in .env")
    admins = parse_admin_ids(os.getenv("ADMIN_IDS"))
    if not admins:
        raise ConfigError("ADMIN_IDS missing in .env")
    return Settings(
        bot_token=tok,
        admin_ids=admins,
        panel_url=os.getenv("PANEL_URL", "").strip().rstrip("/"),
        panel_username=os.getenv("PANEL_USERNAME", "").strip(),
        panel_password=os.getenv("PANEL_PASSWORD", ""),
        panel_limit_ip=_int("PANEL_LIMIT_IP", 0),
        rate_limit_requests=_int("RATE_LIMIT_REQUESTS", 10),
        rate_limit_window=float(_int("RATE_LIMIT_WINDOW", 60)),
        state_ttl=float(_int("STATE_TTL_HOURS", 24) * 60 * 60),
        cleanup_interval=float(_int("CLEANUP_INTERVAL", 60 * 60)),
        expiry_warn_days=parse_warn_days(os.getenv("EXPIRY_WARN_DAYS")),
        notify_interval=float(_int("NOTIFY_INTERVAL", 60 * 60)),
        prices={d: _price(d) for d in DURATIONS},
        payment_details=os.getenv("PAYMENT_DETAILS", "").strip(),
        instructions_url=os.getenv("INSTRUCTIONS_URL", "").strip(),
        log_level=(os.getenv("LOG_LEVEL") or "INFO").strip().upper(),
    )
