from datetime import datetime
from typing import Optional

NOT_SHARING = "Not sharing location"


def last_seen_text(updated_at: Optional[datetime], now: datetime) -> str:
    """Human-readable age of a guardian's last location fix."""
    if updated_at is None:
        return NOT_SHARING

    minutes = int((now - updated_at).total_seconds() // 60)
    if minutes < 1:
        return "Just now"
    if minutes < 60:
        return f"{minutes}m ago"

    hours = minutes // 60
    if hours < 24:
        return f"{hours}h ago"
    return f"{hours // 24}d ago"
