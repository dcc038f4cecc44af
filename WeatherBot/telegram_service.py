import logging
import os
import threading
from typing import Optional

import requests
import telebot
from telebot.apihelper import ApiException

from WeatherBot.config import env_int

logger = logging.getLogger(__name__)

ALLOWED_UPDATES = ["message", "callback_query"]

_bot: Optional[telebot.TeleBot] = None
_bot_lock = threading.Lock()


class TelegramError(RuntimeError):
    pass


def build_bot(token: Optional[str] = None) -> telebot.TeleBot:
    token = token or os.getenv("TELEGRAM_BOT_TOKEN")
    if not token:
        raise RuntimeError("TELEGRAM_BOT_TOKEN is not set")
    # handlers run in the calling thread, which holds the app context
    return telebot.TeleBot(token, parse_mode="HTML", threaded=False)


def get_bot() -> telebot.TeleBot:
    global _bot
    with _bot_lock:
        if _bot is None:
            _bot = build_bot()
        return _bot


def send_message(chat_id, text: str, reply_markup=None) -> Optional[int]:
    try:
        message = get_bot().send_message(chat_id, text, reply_markup=reply_markup)
    except (ApiException, requests.RequestException) as e:
        # e.g. blocked by the user, chat not found, bad markup
        raise TelegramError(f"Telegram sendMessage failed: {e}") from e
    return getattr(message, "message_id", None)


def answer_callback_query(callback_query_id: str) -> None:
    try:
        get_bot().answer_callback_query(callback_query_id)
    except (ApiException, requests.RequestException) as e:
        raise TelegramError(f"Telegram answerCallbackQuery failed: {e}") from e


class TelegramNotifier:
    def deliver(self, chat_id, content: str) -> None:
        message_id = send_message(chat_id, content)
        logger.debug("[DELIVERED] chat_id=%s message_id=%s", chat_id, message_id)


def run_polling(bot: telebot.TeleBot, stop_event: threading.Event, poll_timeout: Optional[int] = None) -> None:
    """Long-poll until ``stop_event`` is set. Handlers must already be registered."""
    poll_timeout = poll_timeout or env_int("POLL_TIMEOUT_SECONDS", "10")

    def _stop_when_asked():
        stop_event.wait()
        bot.stop_polling()

    threading.Thread(target=_stop_when_asked, name="polling-stop", daemon=True).start()

    logger.info("[START] polling Telegram timeout=%ss", poll_timeout)
    if not stop_event.is_set():
        bot.infinity_polling(
            timeout=poll_timeout + 10,
            long_polling_timeout=poll_timeout,
            allowed_updates=ALLOWED_UPDATES,
        )
    logger.info("[STOP] polling stopped")
