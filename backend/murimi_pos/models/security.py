from __future__ import annotations

from ..extensions import db
from murimi_pos.time_utils import to_utc_z


class RateLimitCounter(db.Model):
    """
    Fixed-window request counter keyed by client identifier.

    Stored in the database so every app instance sees the same counts.
    """
    __tablename__ = "rate_limit_counters"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    key = db.Column(db.String(255), nullable=False, unique=True)
    count = db.Column(db.Integer, nullable=False, default=0)
    window_expires_at = db.Column(db.DateTime(timezone=True), nullable=False, index=True)

    def to_dict(self) -> dict:
        return {
            "key": self.key,
            "count": self.count,
            "window_expires_at": to_utc_z(self.window_expires_at),
        }
