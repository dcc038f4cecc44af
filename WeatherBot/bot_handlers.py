import functools
import html
import logging
import threading
from dataclasses import dataclass, replace
from typing import Dict, Optional

from telebot import types

from WeatherBot import telegram_service, weather_service
from WeatherBot.subscriber_store import SubscriberConfig
from WeatherBot.timing import parse_time_of_day

logger = logging.getLogger(__name__)

AWAITING_CITY = "awaiting_city"
AWAITING_TIME = "awaiting_time"

WELCOME_TEXT = (
    "Hi! I report the weather and can send you a daily forecast.\n\n"
    "Send me a city name or share your location to get the current weather.\n\n"
    "Use /setdefault to set up the daily digest, /settings to see it "
    "and /stop to turn it off."
)


def location_keyboard() -> types.ReplyKeyboardMarkup:
    markup = types.ReplyKeyboardMarkup(resize_keyboard=True, one_time_keyboard=True)
    markup.add(types.KeyboardButton("📍 Share my location", request_location=True))
    return markup


def _callback_data(kind: str, location_ref: str) -> str:
    # Telegram caps callback_data at 64 bytes
    return f"{kind}:{location_ref}".encode("utf-8")[:64].decode("utf-8", errors="ignore")


def forecast_keyboard(location_ref: str) -> types.InlineKeyboardMarkup:
    markup = types.InlineKeyboardMarkup()
    markup.row(
        types.InlineKeyboardButton("Until evening", callback_data=_callback_data("evening", location_ref)),
        types.InlineKeyboardButton("5 days", callback_data=_callback_data("forecast", location_ref)),
    )
    return markup


def _logged(handler):
    @functools.wraps(handler)
    def wrapper(event):
        try:
            handler(event)
        except Exception:
            logger.exception("[ERROR] handler=%s", handler.__name__)

    return wrapper


@dataclass
class PendingSetup:
    step: str
    location: Optional[weather_service.ResolvedLocation] = None


class BotHandlers:
    """Turns Telegram updates into replies and settings changes.

    Only conversation progress lives here; everything durable goes through the
    subscriber store.
    """

    def __init__(self, store, admin_chat_id: Optional[str] = None):
        self.store = store
        self.admin_chat_id = (admin_chat_id or "").strip()
        self.bot = None
        self._pending: Dict[int, PendingSetup] = {}
        self._lock = threading.Lock()

    def attach(self, bot) -> None:
        """Register every handler on ``bot``. Order matters: the first match wins."""
        bot.message_handler(commands=["start"])(_logged(self.cmd_start))
        bot.message_handler(commands=["forecast"])(_logged(self.cmd_forecast))
        bot.message_handler(commands=["setdefault"])(_logged(self.cmd_setdefault))
        bot.message_handler(commands=["settings"])(_logged(self.cmd_settings))
        bot.message_handler(commands=["stop"])(_logged(self.cmd_stop))
        bot.message_handler(commands=["broadcast"])(_logged(self.cmd_broadcast))
        bot.message_handler(func=lambda m: (m.text or "").startswith("/"))(_logged(self.cmd_unknown))
        bot.message_handler(func=self._in_setup)(_logged(self.continue_setup))
        bot.message_handler(content_types=["location"])(_logged(self.handle_location))
        bot.message_handler(func=lambda m: bool((m.text or "").strip()))(_logged(self.handle_text))
        bot.callback_query_handler(func=lambda call: True)(_logged(self.handle_callback_query))
        self.bot = bot

    def handle_update(self, update: dict) -> None:
        """Feed one raw webhook update through the registered handlers."""
        if self.bot is None:
            logger.warning("[SKIP] update_id=%s reason=no_bot", update.get("update_id"))
            return
        try:
            self.bot.process_new_updates([types.Update.de_json(update)])
        except Exception:
            logger.exception("[ERROR] update_id=%s", update.get("update_id"))

    def _in_setup(self, message) -> bool:
        with self._lock:
            return message.chat.id in self._pending

    def _command(self, message) -> str:
        # any command ends a half-finished /setdefault
        with self._lock:
            self._pending.pop(message.chat.id, None)
        return (message.text or "").partition(" ")[2].strip()

    # ---- messages ----

    def handle_text(self, message) -> None:
        self.show_current_weather(message.chat.id, message.text.strip())

    def handle_location(self, message) -> None:
        chat_id = message.chat.id
        try:
            city = weather_service.city_from_coords(message.location.latitude, message.location.longitude)
        except weather_service.WeatherServiceError as e:
            logger.warning("[SKIP] chat_id=%s reason=reverse_geocoding err=%s", chat_id, e)
            telegram_service.send_message(chat_id, "Could not work out the city for this location.")
            return
        self.show_current_weather(chat_id, city)

    def show_current_weather(self, chat_id: int, location_ref: str) -> None:
        try:
            report = weather_service.current_report(location_ref)
        except weather_service.WeatherServiceError as e:
            logger.info("[SKIP] chat_id=%s reason=weather_failed location=%r err=%s", chat_id, location_ref, e)
            telegram_service.send_message(chat_id, f"Could not find the city '{html.escape(location_ref)}'.")
            return
        telegram_service.send_message(chat_id, report, reply_markup=forecast_keyboard(location_ref))

    # ---- commands ----

    def cmd_start(self, message) -> None:
        self._command(message)
        telegram_service.send_message(message.chat.id, WELCOME_TEXT, reply_markup=location_keyboard())

    def cmd_unknown(self, message) -> None:
        self._command(message)
        telegram_service.send_message(message.chat.id, "Unknown command. Try /start.")

    def cmd_forecast(self, message) -> None:
        self._command(message)
        chat_id = message.chat.id
        config = self.store.get(chat_id)
        if config is None or not config.location_ref:
            telegram_service.send_message(chat_id, "Set a default city first with /setdefault.")
            return
        self.show_current_weather(chat_id, config.location_ref)

    def cmd_setdefault(self, message) -> None:
        self._command(message)
        with self._lock:
            self._pending[message.chat.id] = PendingSetup(AWAITING_CITY)
        telegram_service.send_message(message.chat.id, "Please send the city for your daily forecast.")

    def continue_setup(self, message) -> None:
        chat_id = message.chat.id
        text = message.text.strip()
        with self._lock:
            pending = self._pending.get(chat_id)
        if pending is None:
            self.show_current_weather(chat_id, text)
            return

        if pending.step == AWAITING_CITY:
            try:
                place = weather_service.resolve_location(text)
            except weather_service.WeatherServiceError as e:
                logger.info("[SKIP] chat_id=%s reason=geocoding_failed query=%r err=%s", chat_id, text, e)
                telegram_service.send_message(chat_id, f"Could not find the city '{html.escape(text)}'.")
                return

            with self._lock:
                self._pending[chat_id] = PendingSetup(AWAITING_TIME, place)
            telegram_service.send_message(
                chat_id,
                f"Found <b>{html.escape(place.name)}</b>.\n\n"
                "Now send the time for the daily forecast, e.g. <code>08:00</code>.",
            )
            return

        notify_at = parse_time_of_day(text)
        if notify_at is None:
            telegram_service.send_message(
                chat_id, "Wrong time format. Send it as HH:MM, e.g. <code>08:30</code>."
            )
            return

        place = pending.location
        existing = self.store.get(chat_id)
        config = SubscriberConfig(
            chat_id=chat_id,
            enabled=True,
            location_ref=place.ref,
            notify_time=f"{notify_at:%H:%M}",
            time_zone=place.time_zone,
            last_sent_at=existing.last_sent_at if existing else None,
        )
        self.store.save(config)

        with self._lock:
            self._pending.pop(chat_id, None)

        logger.info(
            "[SUBSCRIBED] chat_id=%s location=%r time=%s tz=%s",
            chat_id, config.location_ref, config.notify_time, config.time_zone,
        )
        telegram_service.send_message(
            chat_id,
            f"Done! The daily forecast for <b>{html.escape(place.name)}</b> will arrive at "
            f"<b>{config.notify_time}</b> local time.",
        )

    def cmd_settings(self, message) -> None:
        self._command(message)
        chat_id = message.chat.id
        config = self.store.get(chat_id)
        if config is None:
            telegram_service.send_message(chat_id, "No daily forecast yet. Use /setdefault.")
            return

        status = "on" if config.enabled else "off"
        telegram_service.send_message(
            chat_id,
            f"Daily forecast: <b>{status}</b>\n"
            f"City: {html.escape(config.location_ref or '-')}\n"
            f"Time: {html.escape(config.notify_time or '-')}\n"
            f"Time zone: {html.escape(config.time_zone or 'UTC')}",
        )

    def cmd_stop(self, message) -> None:
        self._command(message)
        chat_id = message.chat.id
        config = self.store.get(chat_id)
        if config is None or not config.enabled:
            telegram_service.send_message(chat_id, "The daily forecast is already off.")
            return
        self.store.save(replace(config, enabled=False))
        logger.info("[UNSUBSCRIBED] chat_id=%s", chat_id)
        telegram_service.send_message(chat_id, "The daily forecast is off. /setdefault turns it back on.")

    def cmd_broadcast(self, message) -> None:
        text = self._command(message)
        chat_id = message.chat.id
        if not self.admin_chat_id or str(chat_id) != self.admin_chat_id:
            telegram_service.send_message(chat_id, "This command is for the administrator only.")
            return
        if not text:
            telegram_service.send_message(chat_id, "Add the message after /broadcast.")
            return

        sent, failed = 0, 0
        for config in self.store.fetch_all():
            try:
                telegram_service.send_message(config.chat_id, html.escape(text))
                sent += 1
            except Exception as e:
                failed += 1
                logger.warning("[ERROR] broadcast chat_id=%s err=%s", config.chat_id, e)

        telegram_service.send_message(
            chat_id, f"Broadcast finished.\nDelivered: <b>{sent}</b>\nFailed: <b>{failed}</b>"
        )

    # ---- inline buttons ----

    def handle_callback_query(self, call) -> None:
        kind, _, location_ref = (call.data or "").partition(":")
        chat_id = call.message.chat.id if call.message is not None else None

        if chat_id is not None and location_ref:
            try:
                if kind == "evening":
                    telegram_service.send_message(chat_id, weather_service.evening_forecast(location_ref))
                elif kind == "forecast":
                    telegram_service.send_message(chat_id, weather_service.five_day_forecast(location_ref))
            except weather_service.WeatherServiceError as e:
                logger.info("[SKIP] chat_id=%s reason=forecast_failed err=%s", chat_id, e)
                telegram_service.send_message(
                    chat_id, f"Could not get the forecast for '{html.escape(location_ref)}'."
                )

        telegram_service.answer_callback_query(call.id)
