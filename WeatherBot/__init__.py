import os

from flask import Flask
from flask_sqlalchemy import SQLAlchemy

from WeatherBot.config import configure_logging, env_str

db = SQLAlchemy()


def create_app(test_config: dict | None = None) -> Flask:
    configure_logging()
    app = Flask(__name__)

    app.config.from_mapping(
        SQLALCHEMY_DATABASE_URI=os.getenv("DATABASE_URL"),
        SQLALCHEMY_TRACK_MODIFICATIONS=False,
        STORAGE_BACKEND=env_str("STORAGE_BACKEND", "sql").lower(),
        SUBSCRIBERS_FILE=env_str("SUBSCRIBERS_FILE", "data/subscribers.json"),
        ADMIN_CHAT_ID=env_str("ADMIN_CHAT_ID"),
        TELEGRAM_BOT_TOKEN=env_str("TELEGRAM_BOT_TOKEN"),
    )
    if test_config:
        app.config.update(test_config)

    if app.config["STORAGE_BACKEND"] == "sql":
        if not app.config["SQLALCHEMY_DATABASE_URI"]:
            raise RuntimeError("DATABASE_URL is not set")
        db.init_app(app)

        from WeatherBot import models  # noqa: F401
        with app.app_context():
            db.create_all()

    from WeatherBot.bot_handlers import BotHandlers
    from WeatherBot.subscriber_store import build_store
    from WeatherBot.telegram_service import build_bot

    store = build_store(app)
    handlers = BotHandlers(store, app.config["ADMIN_CHAT_ID"])
    if app.config["TELEGRAM_BOT_TOKEN"]:
        handlers.attach(build_bot(app.config["TELEGRAM_BOT_TOKEN"]))
    app.extensions["subscriber_store"] = store
    app.extensions["bot_handlers"] = handlers

    from WeatherBot.routes import main
    app.register_blueprint(main)

    return app
