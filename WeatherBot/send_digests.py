"""Daily digest dispatch.

Every tick sweeps all subscribers and delivers to those whose local notify time
has been reached on a local day without a delivery yet. ``last_sent_at`` on the
stored subscriber is the only de-duplication state, and it is written only after
the notifier confirms delivery, so a failed or interrupted send is retried on
the next tick and a restart never re-sends a digest that already went out.
"""
import logging
import threading
from dataclasses import replace
from datetime import datetime
from typing import Callable, Optional, Protocol

from flask import current_app

from WeatherBot.config import SchedulerSettings
from WeatherBot.subscriber_store import SubscriberConfig, SubscriberStore
from WeatherBot.telegram_service import TelegramNotifier
from WeatherBot.timing import is_due, parse_time_of_day, resolve_zone, utc_now
from WeatherBot.weather_service import WeatherContentProvider

logger = logging.getLogger(__name__)

SENT = "sent"
SKIPPED = "skipped"
ERRORS = "errors"


class ContentProvider(Protocol):
    def fetch_content(self, location_ref: str) -> str: ...


class Notifier(Protocol):
    def deliver(self, chat_id, content: str) -> None: ...


class DigestScheduler:
    def __init__(
        self,
        store: SubscriberStore,
        content_provider: ContentProvider,
        notifier: Notifier,
        default_time_zone: str = "UTC",
        clock: Callable[[], datetime] = utc_now,
    ):
        self.store = store
        self.content_provider = content_provider
        self.notifier = notifier
        self.default_time_zone = default_time_zone
        self.clock = clock

    def run(self, tick_interval: float, stop_event: threading.Event) -> None:
        """Sweep every ``tick_interval`` seconds until ``stop_event`` is set.

        The wait starts after the sweep returns, so sweeps never overlap.
        """
        logger.info("[START] digest scheduler tick_interval=%ss", tick_interval)
        while not stop_event.is_set():
            try:
                stats = self.run_sweep(stop_event)
                logger.info("[TICK] %s", stats)
            except Exception:
                logger.exception("[ERROR] sweep failed")
            stop_event.wait(tick_interval)
        logger.info("[STOP] digest scheduler stopped")

    def run_sweep(self, stop_event: Optional[threading.Event] = None) -> dict:
        stats = {"checked": 0, SENT: 0, SKIPPED: 0, ERRORS: 0}

        try:
            subs = self.store.fetch_all()
        except Exception as e:
            stats[ERRORS] += 1
            logger.warning("[SKIP] tick reason=store_unavailable err=%s", e)
            return stats

        for s in subs:
            if stop_event is not None and stop_event.is_set():
                logger.info("[STOP] sweep abandoned after %s subscriber(s)", stats["checked"])
                break

            stats["checked"] += 1
            try:
                outcome = self.process(s)
            except Exception:
                outcome = ERRORS
                logger.exception("[ERROR] chat_id=%s", getattr(s, "chat_id", None))
            stats[outcome] += 1

        return stats

    def process(self, s: SubscriberConfig) -> str:
        if not s.enabled:
            return SKIPPED

        if not (s.location_ref or "").strip():
            logger.debug("[SKIP] chat_id=%s reason=no_location", s.chat_id)
            return SKIPPED

        notify_at = parse_time_of_day(s.notify_time)
        if notify_at is None:
            logger.warning("[SKIP] chat_id=%s reason=bad_time time=%r", s.chat_id, s.notify_time)
            return SKIPPED

        tz = resolve_zone(s.time_zone, self.default_time_zone)
        now_utc = self.clock()

        if not is_due(now_utc, notify_at, s.last_sent_at, tz):
            return SKIPPED

        try:
            content = self.content_provider.fetch_content(s.location_ref)
        except Exception as e:
            logger.warning(
                "[RETRY] chat_id=%s reason=content_failed location=%r err=%s",
                s.chat_id, s.location_ref, e,
            )
            return ERRORS

        try:
            self.notifier.deliver(s.chat_id, content)
        except Exception as e:
            logger.warning("[RETRY] chat_id=%s reason=delivery_failed err=%s", s.chat_id, e)
            return ERRORS

        try:
            # settings may have changed while we were sending; only the marker moves
            current = self.store.get(s.chat_id)
            if current is None:
                logger.info("[SENT] chat_id=%s reason=record_gone", s.chat_id)
                return SENT
            self.store.save(replace(current, last_sent_at=now_utc))
        except Exception as e:
            # delivered but unmarked: the next tick may send it again
            logger.error("[ERROR] chat_id=%s reason=save_failed err=%s", s.chat_id, e)
            return ERRORS

        logger.info(
            "[SENT] chat_id=%s tz=%s local=%s",
            s.chat_id, s.time_zone or self.default_time_zone, now_utc.astimezone(tz).isoformat(),
        )
        return SENT


def build_scheduler(store: SubscriberStore, settings: Optional[SchedulerSettings] = None) -> DigestScheduler:
    settings = settings or SchedulerSettings.from_env()
    return DigestScheduler(
        store,
        WeatherContentProvider(),
        TelegramNotifier(),
        default_time_zone=settings.default_time_zone,
    )


def send_digests_job() -> dict:
    """Run one sweep with the current app's store. Needs an app context."""
    return build_scheduler(current_app.extensions["subscriber_store"]).run_sweep()
