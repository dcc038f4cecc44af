from flask import Blueprint, current_app, request, jsonify
import hmac
import os

from WeatherBot.send_digests import send_digests_job
from WeatherBot.timing import is_due, parse_time_of_day, resolve_zone, utc_now
from WeatherBot.weather_service import WeatherContentProvider

main = Blueprint("main", __name__)


def _token_matches(given, expected) -> bool:
    if not expected or not given:
        return False
    return hmac.compare_digest(given, expected)


@main.route("/", methods=["GET"])
def home():
    return "Weather digest bot is running ✅", 200


@main.route("/telegram/webhook", methods=["POST"])
def telegram_webhook():
    secret = os.getenv("TELEGRAM_WEBHOOK_SECRET")
    if secret and not _token_matches(request.headers.get("X-Telegram-Bot-Api-Secret-Token"), secret):
        return jsonify({"error": "unauthorized"}), 401

    update = request.get_json(silent=True)
    if not isinstance(update, dict):
        return jsonify({"error": "expected a JSON update"}), 400

    current_app.extensions["bot_handlers"].handle_update(update)
    return jsonify({"ok": True}), 200


@main.route("/preview/<chat_id>", methods=["GET"])
def preview(chat_id):
    # group chats have negative ids, which the int converter refuses
    try:
        chat_id = int(chat_id)
    except ValueError:
        return jsonify({"error": "chat_id must be an integer"}), 400

    sub = current_app.extensions["subscriber_store"].get(chat_id)
    if not sub:
        return jsonify({"error": "Subscriber not found"}), 404

    default_zone = os.getenv("DEFAULT_TIME_ZONE", "UTC")
    tz = resolve_zone(sub.time_zone, default_zone)
    notify_at = parse_time_of_day(sub.notify_time)
    due_now = bool(
        sub.enabled
        and sub.location_ref
        and notify_at is not None
        and is_due(utc_now(), notify_at, sub.last_sent_at, tz)
    )

    body = {
        "chat_id": sub.chat_id,
        "enabled": sub.enabled,
        "location_ref": sub.location_ref,
        "notify_time": sub.notify_time,
        "time_zone": sub.time_zone,
        "resolved_time_zone": str(tz),
        "last_sent_at": sub.last_sent_at.isoformat() if sub.last_sent_at else None,
        "due_now": due_now,
    }

    if not sub.location_ref:
        body["digest_preview"] = None
        return jsonify(body), 200

    try:
        body["digest_preview"] = WeatherContentProvider().fetch_content(sub.location_ref)
    except RuntimeError as e:
        body["error"] = str(e)
        return jsonify(body), 502

    return jsonify(body), 200


@main.route("/admin/run-digests", methods=["POST"])
def admin_run_digests():
    token = request.headers.get("X-Admin-Token")
    admin_token = os.getenv("ADMIN_TOKEN")

    if not _token_matches(token, admin_token):
        return jsonify({"error": "unauthorized"}), 401

    stats = send_digests_job()
    return jsonify({"ok": True, "stats": stats}), 200
