from datetime import datetime, timezone


def utcnow() -> datetime:
    """Naive UTC; every datetime column is declared as a naive DateTime() and stored as UTC."""
    return datetime.now(timezone.utc).replace(tzinfo=None)
