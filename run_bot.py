"""Long-poll Telegram and run the daily digest scheduler in one process.

    python run_bot.py                   # polling + scheduler
    python run_bot.py --scheduler-only  # scheduler only (webhook deployments)

SIGINT / SIGTERM stop both loops; a sweep in flight stops at the next
subscriber boundary.
"""
import argparse
import logging
import signal
import threading

from WeatherBot import create_app
from WeatherBot.config import SchedulerSettings
from WeatherBot.send_digests import build_scheduler
from WeatherBot.telegram_service import run_polling

logger = logging.getLogger("run_bot")


def main():
    parser = argparse.ArgumentParser(description="Weather digest bot")
    parser.add_argument("--scheduler-only", action="store_true", help="do not poll Telegram for updates")
    args = parser.parse_args()

    app = create_app()
    settings = SchedulerSettings.from_env()
    stop_event = threading.Event()

    def _stop(signum, frame):
        logger.info("Received signal %s, shutting down", signum)
        stop_event.set()

    signal.signal(signal.SIGINT, _stop)
    signal.signal(signal.SIGTERM, _stop)

    def _run_scheduler():
        with app.app_context():
            scheduler = build_scheduler(app.extensions["subscriber_store"], settings)
            scheduler.run(settings.tick_interval, stop_event)

    scheduler_thread = threading.Thread(target=_run_scheduler, name="digest-scheduler", daemon=True)
    scheduler_thread.start()

    bot = app.extensions["bot_handlers"].bot
    if args.scheduler_only:
        while not stop_event.is_set():
            stop_event.wait(1)
    elif bot is None:
        logger.error("TELEGRAM_BOT_TOKEN is not set, nothing to poll")
        stop_event.set()
    else:
        with app.app_context():
            run_polling(bot, stop_event)

    stop_event.set()
    scheduler_thread.join()


if __name__ == "__main__":
    main()
