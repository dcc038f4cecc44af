from datetime import datetime, timezone

import pytest

from WeatherBot import create_app
from WeatherBot.send_digests import DigestScheduler
from WeatherBot.subscriber_store import StoreError
from WeatherBot.telegram_service import TelegramError
from WeatherBot.weather_service import WeatherServiceError


class FakeStore:
    def __init__(self, configs=()):
        self.configs = {c.chat_id: c for c in configs}
        self.saved = []
        self.fail_fetch = False
        self.fail_save_for = set()

    def fetch_all(self):
        if self.fail_fetch:
            raise StoreError("database is unreachable")
        return list(self.configs.values())

    def get(self, chat_id):
        return self.configs.get(chat_id)

    def save(self, config):
        if config.chat_id in self.fail_save_for:
            raise StoreError("write failed")
        self.saved.append(config)
        self.configs[config.chat_id] = config


class FakeContent:
    def __init__(self):
        self.failing = set()
        self.calls = []

    def fetch_content(self, location_ref):
        self.calls.append(location_ref)
        if location_ref in self.failing:
            raise WeatherServiceError(f"Location not found: {location_ref}")
        return f"weather for {location_ref}"


class FakeNotifier:
    def __init__(self):
        self.failing = set()
        self.delivered = []

    def deliver(self, chat_id, content):
        if chat_id in self.failing:
            raise TelegramError("Forbidden: bot was blocked by the user")
        self.delivered.append((chat_id, content))


class FixedClock:
    def __init__(self, now):
        self.now = now

    def __call__(self):
        return self.now


def utc(*args):
    return datetime(*args, tzinfo=timezone.utc)


@pytest.fixture
def store():
    return FakeStore()


@pytest.fixture
def content():
    return FakeContent()


@pytest.fixture
def notifier():
    return FakeNotifier()


@pytest.fixture
def clock():
    return FixedClock(utc(2026, 7, 1, 5, 5))


@pytest.fixture
def scheduler(store, content, notifier, clock):
    return DigestScheduler(store, content, notifier, clock=clock)


@pytest.fixture
def app(monkeypatch):
    monkeypatch.setenv("ADMIN_TOKEN", "admin-secret")
    monkeypatch.delenv("TELEGRAM_WEBHOOK_SECRET", raising=False)
    app = create_app(
        {
            "TESTING": True,
            "SQLALCHEMY_DATABASE_URI": "sqlite://",
            "STORAGE_BACKEND": "sql",
            "ADMIN_CHAT_ID": "999",
            "TELEGRAM_BOT_TOKEN": "123:abc",
        }
    )
    yield app


@pytest.fixture
def client(app):
    return app.test_client()
