import json
from datetime import timezone

import pytest

from conftest import utc
from WeatherBot import create_app, db, subscriber_store
from WeatherBot.models import Subscriber
from WeatherBot.subscriber_store import (
    JsonFileSubscriberStore,
    SqlSubscriberStore,
    StoreError,
    SubscriberConfig,
    build_store,
)


def make_config(**overrides):
    fields = dict(
        chat_id=42,
        enabled=True,
        location_ref="Kyiv,UA",
        notify_time="08:00",
        time_zone="Europe/Kyiv",
        last_sent_at=None,
    )
    fields.update(overrides)
    return SubscriberConfig(**fields)


# ---- JSON file ----


def test_json_store_missing_file_is_empty(tmp_path):
    store = JsonFileSubscriberStore(tmp_path / "nothing.json")
    assert store.fetch_all() == []
    assert store.get(42) is None


def test_json_store_persists_across_instances(tmp_path):
    path = tmp_path / "data" / "subscribers.json"
    JsonFileSubscriberStore(path).save(make_config(last_sent_at=utc(2026, 7, 1, 5, 5)))

    reloaded = JsonFileSubscriberStore(path).get(42)

    assert reloaded == make_config(last_sent_at=utc(2026, 7, 1, 5, 5))
    assert reloaded.last_sent_at.tzinfo is not None


def test_json_store_updates_in_place(tmp_path):
    store = JsonFileSubscriberStore(tmp_path / "subscribers.json")
    store.save(make_config())
    store.save(make_config(chat_id=7, location_ref="Lviv"))
    store.save(make_config(notify_time="09:30", enabled=False))

    configs = {c.chat_id: c for c in store.fetch_all()}

    assert sorted(configs) == [7, 42]
    assert configs[42].notify_time == "09:30"
    assert configs[42].enabled is False
    assert configs[7].location_ref == "Lviv"


def test_json_store_never_moves_last_sent_backwards(tmp_path):
    store = JsonFileSubscriberStore(tmp_path / "subscribers.json")
    store.save(make_config(last_sent_at=utc(2026, 7, 2, 5, 0)))

    stale = make_config(last_sent_at=utc(2026, 7, 1, 5, 0), location_ref="Odesa")
    store.save(stale)
    store.save(make_config(last_sent_at=None, location_ref="Odesa"))

    saved = store.get(42)
    assert saved.last_sent_at == utc(2026, 7, 2, 5, 0)
    assert saved.location_ref == "Odesa"
    assert stale.last_sent_at == utc(2026, 7, 1, 5, 0)


def test_json_store_corrupt_file_raises_store_error(tmp_path):
    path = tmp_path / "subscribers.json"
    path.write_text("{not json", encoding="utf-8")

    with pytest.raises(StoreError):
        JsonFileSubscriberStore(path).fetch_all()


def test_json_store_skips_unreadable_records(tmp_path):
    path = tmp_path / "subscribers.json"
    path.write_text(
        json.dumps(
            [
                {"location_ref": "no id"},
                {"chat_id": 5, "enabled": True, "notify_time": "07:00", "last_sent_at": "yesterday"},
                {"chat_id": 6, "enabled": True, "location_ref": "Kyiv", "notify_time": "07:00"},
            ]
        ),
        encoding="utf-8",
    )

    configs = JsonFileSubscriberStore(path).fetch_all()

    assert [c.chat_id for c in configs] == [6]
    assert configs[0].time_zone is None


def test_json_store_normalises_hand_edited_values(tmp_path):
    path = tmp_path / "subscribers.json"
    path.write_text(
        json.dumps(
            [
                {"chat_id": 1, "enabled": "false", "location_ref": "Kyiv", "notify_time": "08:00", "time_zone": 3},
                {"chat_id": 2, "enabled": "true", "location_ref": 5, "notify_time": 800, "time_zone": " Europe/Kyiv "},
            ]
        ),
        encoding="utf-8",
    )

    first, second = JsonFileSubscriberStore(path).fetch_all()

    assert first.enabled is False
    assert first.time_zone is None
    assert second.enabled is True
    assert second.location_ref == ""
    assert second.notify_time == ""
    assert second.time_zone == "Europe/Kyiv"


def test_json_store_failed_write_leaves_no_temp_file(tmp_path, monkeypatch):
    path = tmp_path / "subscribers.json"
    store = JsonFileSubscriberStore(path)
    store.save(make_config())

    def failing_dump(*args, **kwargs):
        raise OSError("disk full")

    monkeypatch.setattr(subscriber_store.json, "dump", failing_dump)

    with pytest.raises(StoreError, match="disk full"):
        store.save(make_config(notify_time="09:00"))

    assert [p.name for p in tmp_path.iterdir()] == ["subscribers.json"]
    assert store.get(42).notify_time == "08:00"


# ---- SQL ----


def test_sql_store_saves_and_reads_back(app):
    store = app.extensions["subscriber_store"]
    assert isinstance(store, SqlSubscriberStore)

    with app.app_context():
        store.save(make_config(last_sent_at=utc(2026, 7, 1, 5, 5)))
        loaded = store.get(42)
        everyone = store.fetch_all()

    assert loaded == make_config(last_sent_at=utc(2026, 7, 1, 5, 5))
    assert loaded.last_sent_at.tzinfo == timezone.utc
    assert everyone == [loaded]


def test_sql_store_upserts_and_keeps_last_sent_monotonic(app):
    store = app.extensions["subscriber_store"]

    with app.app_context():
        store.save(make_config(last_sent_at=utc(2026, 7, 2, 5, 0)))
        store.save(make_config(last_sent_at=utc(2026, 7, 1, 5, 0), notify_time="10:15"))
        loaded = store.get(42)
        rows = db.session.query(Subscriber).count()

    assert rows == 1
    assert loaded.notify_time == "10:15"
    assert loaded.last_sent_at == utc(2026, 7, 2, 5, 0)


def test_sql_store_sees_rows_written_elsewhere(app):
    store = app.extensions["subscriber_store"]

    with app.app_context():
        assert store.fetch_all() == []
        db.session.add(Subscriber(chat_id=3, is_active=True, location_ref="Lviv", notify_time="06:00"))
        db.session.commit()
        db.session.close()

        configs = store.fetch_all()

    assert [c.chat_id for c in configs] == [3]
    assert configs[0].time_zone is None
    assert configs[0].last_sent_at is None


def test_build_store_picks_json_backend(tmp_path):
    app = create_app({"STORAGE_BACKEND": "json", "SUBSCRIBERS_FILE": str(tmp_path / "s.json")})
    assert isinstance(app.extensions["subscriber_store"], JsonFileSubscriberStore)


def test_build_store_rejects_unknown_backend(app):
    app.config["STORAGE_BACKEND"] = "redis"
    with pytest.raises(RuntimeError):
        build_store(app)


def test_sql_backend_requires_database_url(monkeypatch):
    monkeypatch.delenv("DATABASE_URL", raising=False)
    with pytest.raises(RuntimeError, match="DATABASE_URL"):
        create_app({"STORAGE_BACKEND": "sql"})
