from WeatherBot import db
from datetime import datetime, timezone


class Subscriber(db.Model):
    __tablename__ = "subscribers"

    chat_id = db.Column(db.BigInteger, primary_key=True, autoincrement=False)

    is_active = db.Column(db.Boolean, default=False, nullable=False)
    location_ref = db.Column(db.String(128), nullable=True)
    notify_time = db.Column(db.String(8), nullable=True)
    timezone = db.Column(db.String(64), nullable=True)

    last_sent_at = db.Column(db.DateTime(timezone=True), nullable=True)

    created_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc)
    )
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc)
    )
