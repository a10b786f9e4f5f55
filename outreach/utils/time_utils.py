"""
Timestamp helpers shared by the gate, the ingestion worker and the job ledger.

All pipeline times are aware UTC datetimes.
"""

from datetime import UTC, datetime
from typing import Any

RUN_KEY_DAY = "%Y-%m-%d"
RUN_KEY_HOUR = "%Y-%m-%dT%H"
RUN_KEY_MINUTE = "%Y-%m-%dT%H:%M"


def utc_now() -> datetime:
    return datetime.now(UTC)


def parse_timestamp(value: datetime | str | None) -> datetime | None:
    """Coerce a stored timestamp to an aware UTC datetime, or None if unparseable."""
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=UTC)

    if isinstance(value, str) and value.strip():
        try:
            parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
        except ValueError:
            return None
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=UTC)

    return None


def slack_ts_to_datetime(ts: Any) -> datetime | None:
    """Slack timestamps are epoch seconds as strings ("1712345678.000200")."""
    if ts is None or ts == "":
        return None
    try:
        seconds = float(ts)
    except (TypeError, ValueError):
        return None
    try:
        return datetime.fromtimestamp(seconds, tz=UTC)
    except (OverflowError, OSError, ValueError):
        return None


def run_key_for(now: datetime, fmt: str = RUN_KEY_MINUTE) -> str:
    """UTC time bucket identifying one scheduled run."""
    return now.astimezone(UTC).strftime(fmt)
