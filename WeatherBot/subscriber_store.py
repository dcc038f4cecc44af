"""Per-user digest settings and the two storage backends that hold them.

Both stores speak plain ``SubscriberConfig`` values so the scheduler never
touches ORM objects or file handles. Writes are last-write-wins per chat id,
except ``last_sent_at``, which never moves backwards.
"""
import json
import logging
import os
import tempfile
import threading
from dataclasses import asdict, dataclass, replace
from datetime import datetime
from pathlib import Path
from typing import List, Optional, Protocol

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError

from WeatherBot import db
from WeatherBot.models import Subscriber
from WeatherBot.timing import as_utc

logger = logging.getLogger(__name__)


class StoreError(RuntimeError):
    pass


@dataclass
class SubscriberConfig:
    chat_id: int
    enabled: bool = False
    location_ref: str = ""
    notify_time: str = ""
    time_zone: Optional[str] = None
    last_sent_at: Optional[datetime] = None


class SubscriberStore(Protocol):
    def fetch_all(self) -> List[SubscriberConfig]: ...

    def get(self, chat_id: int) -> Optional[SubscriberConfig]: ...

    def save(self, config: SubscriberConfig) -> None: ...


def _text(value) -> str:
    return value.strip() if isinstance(value, str) else ""


def _flag(value) -> bool:
    # hand-edited files sometimes carry "false" or "0" as strings
    if isinstance(value, str):
        return value.strip().lower() in ("1", "true", "yes", "on")
    return bool(value)


def _later(stored: Optional[datetime], incoming: Optional[datetime]) -> Optional[datetime]:
    if stored is None:
        return as_utc(incoming) if incoming is not None else None
    if incoming is None:
        return as_utc(stored)
    return max(as_utc(stored), as_utc(incoming))


class SqlSubscriberStore:
    """Backed by the ``subscribers`` table. Needs an active app context."""

    def _to_config(self, row) -> SubscriberConfig:
        return SubscriberConfig(
            chat_id=row.chat_id,
            enabled=bool(row.is_active),
            location_ref=row.location_ref or "",
            notify_time=row.notify_time or "",
            time_zone=row.timezone,
            last_sent_at=as_utc(row.last_sent_at) if row.last_sent_at else None,
        )

    def fetch_all(self) -> List[SubscriberConfig]:
        try:
            rows = db.session.scalars(select(Subscriber).order_by(Subscriber.chat_id.asc())).all()
            return [self._to_config(r) for r in rows]
        except SQLAlchemyError as e:
            raise StoreError(f"Could not load subscribers: {e}") from e
        finally:
            # ends the read transaction so the next tick sees other writers' rows
            db.session.close()

    def get(self, chat_id: int) -> Optional[SubscriberConfig]:
        try:
            row = db.session.get(Subscriber, chat_id)
            return self._to_config(row) if row else None
        except SQLAlchemyError as e:
            raise StoreError(f"Could not load subscriber {chat_id}: {e}") from e
        finally:
            db.session.close()

    def save(self, config: SubscriberConfig) -> None:
        try:
            row = db.session.get(Subscriber, config.chat_id)
            if row is None:
                row = Subscriber(chat_id=config.chat_id)
                db.session.add(row)

            row.is_active = config.enabled
            row.location_ref = config.location_ref or None
            row.notify_time = config.notify_time or None
            row.timezone = config.time_zone
            row.last_sent_at = _later(row.last_sent_at, config.last_sent_at)

            db.session.commit()
        except SQLAlchemyError as e:
            db.session.rollback()
            raise StoreError(f"Could not save subscriber {config.chat_id}: {e}") from e


class JsonFileSubscriberStore:
    """Keeps every config in one indented JSON list on disk."""

    def __init__(self, path):
        self.path = Path(path)
        self._lock = threading.Lock()

    def _read(self) -> List[SubscriberConfig]:
        if not self.path.exists():
            return []
        try:
            raw = json.loads(self.path.read_text(encoding="utf-8") or "[]")
        except (OSError, ValueError) as e:
            raise StoreError(f"Could not read {self.path}: {e}") from e
        if not isinstance(raw, list):
            raise StoreError(f"{self.path} does not hold a list of subscribers")

        configs = []
        for item in raw:
            try:
                last = item.get("last_sent_at")
                configs.append(
                    SubscriberConfig(
                        chat_id=int(item["chat_id"]),
                        enabled=_flag(item.get("enabled", False)),
                        location_ref=_text(item.get("location_ref")),
                        notify_time=_text(item.get("notify_time")),
                        time_zone=_text(item.get("time_zone")) or None,
                        last_sent_at=as_utc(datetime.fromisoformat(last)) if last else None,
                    )
                )
            except (AttributeError, KeyError, TypeError, ValueError) as e:
                logger.warning("[SKIP] record=%r reason=unreadable err=%s", item, e)
        return configs

    def _write(self, configs: List[SubscriberConfig]) -> None:
        payload = []
        for c in configs:
            item = asdict(c)
            item["last_sent_at"] = c.last_sent_at.isoformat() if c.last_sent_at else None
            payload.append(item)

        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp = tempfile.mkstemp(dir=self.path.parent, prefix=self.path.name, suffix=".tmp")
        except OSError as e:
            raise StoreError(f"Could not write {self.path}: {e}") from e

        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(payload, f, indent=2, ensure_ascii=False)
            os.replace(tmp, self.path)
        except (OSError, TypeError, ValueError) as e:
            Path(tmp).unlink(missing_ok=True)
            raise StoreError(f"Could not write {self.path}: {e}") from e

    def fetch_all(self) -> List[SubscriberConfig]:
        with self._lock:
            return self._read()

    def get(self, chat_id: int) -> Optional[SubscriberConfig]:
        with self._lock:
            return next((c for c in self._read() if c.chat_id == chat_id), None)

    def save(self, config: SubscriberConfig) -> None:
        with self._lock:
            configs = self._read()
            for i, existing in enumerate(configs):
                if existing.chat_id == config.chat_id:
                    configs[i] = replace(
                        config, last_sent_at=_later(existing.last_sent_at, config.last_sent_at)
                    )
                    break
            else:
                configs.append(config)
            self._write(configs)


def build_store(app):
    backend = app.config.get("STORAGE_BACKEND", "sql")
    if backend == "json":
        return JsonFileSubscriberStore(app.config["SUBSCRIBERS_FILE"])
    if backend == "sql":
        return SqlSubscriberStore()
    raise RuntimeError(f"Unknown STORAGE_BACKEND: {backend!r} (expected 'sql' or 'json')")
