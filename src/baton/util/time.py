from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def age_seconds(ts: str, *, now: Optional[datetime] = None) -> Optional[float]:
    """Seconds elapsed since an ISO-8601 timestamp; None when it cannot be parsed.

    Naive timestamps are taken as UTC. A trailing ``Z`` is accepted on every
    supported interpreter.
    """
    raw = (ts or "").strip()
    if raw.endswith("Z"):
        raw = raw[:-1] + "+00:00"
    try:
        then = datetime.fromisoformat(raw)
    except ValueError:
        return None
    if then.tzinfo is None:
        then = then.replace(tzinfo=timezone.utc)
    return ((now or datetime.now(timezone.utc)) - then).total_seconds()
