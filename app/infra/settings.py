from __future__ import annotations

import os


def _csv(raw: str) -> frozenset[str]:
    return frozenset(item.strip().lower() for item in raw.split(",") if item.strip())


def _flag(raw: str) -> bool:
    return raw.strip().lower() in {"1", "true", "yes", "on"}


ENTRY_CURRENCY = os.getenv("ENTRY_CURRENCY", "LKR")
CANONICAL_CURRENCY = os.getenv("CANONICAL_CURRENCY", "USD")
ENTRY_CURRENCY_RATE = float(os.getenv("ENTRY_CURRENCY_RATE", "303.62"))

PRIVILEGED_IDENTITIES = _csv(os.getenv("PRIVILEGED_IDENTITIES", ""))

MAX_ACTIVE_REQUESTS = int(os.getenv("MAX_ACTIVE_REQUESTS", "3"))
STRICT_DEVICE_OWNERSHIP = _flag(os.getenv("STRICT_DEVICE_OWNERSHIP", "true"))

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
