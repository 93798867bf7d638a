from flask import Flask, jsonify, request
from database import init_database
import logging
from typing import Any, Dict, Mapping

from replay.store import StoreUnavailable, TelemetryStore
from replay.types import FlightKey

logger = logging.getLogger(__name__)

app = Flask(__name__)

# Initialize database on startup
init_database()

store = TelemetryStore()


def _bad_request(code: str, message: str, **extra):
    payload = {"error": {"code": code, "message": message}}
    if extra:
        payload["error"].update(extra)
    return jsonify(payload), 400


def _store_unavailable(e: Exception):
    logger.warning("telemetry store failed: %s", e)
    return jsonify({"error": {"code": "store_unavailable", "message": "telemetry store unavailable"}}), 503


def _key_from_args(args: Mapping[str, Any]) -> FlightKey:
    return FlightKey.from_payload(
        {
            "flight_number": args.get("flight_number") or args.get("flightNumber"),
            "date": args.get("date"),
        }
    )


@app.route("/health")
def health():
    return jsonify({"ok": True})


@app.route("/pilot/path")
def pilot_path():
    """
    Static trajectory for a flight/date: every sample that carries a position.
    Read straight from the store; does not touch replay sessions.
    """
    try:
        key = _key_from_args(request.args)
    except ValueError as e:
        return _bad_request("missing_params", str(e), fields=["flight_number", "date"])
    try:
        samples = store.load_flight(key.flight_number, key.date)
    except StoreUnavailable as e:
        return _store_unavailable(e)
    path = [s.to_payload() for s in samples if s.has_position]
    return jsonify({"path": path, "total": len(path)})


@app.route("/pilot/flights")
def pilot_flights():
    try:
        flights = store.list_flights()
    except StoreUnavailable as e:
        return _store_unavailable(e)
    out: Dict[str, Any] = {"flights": flights}
    return jsonify(out)


if __name__ == '__main__':
    app.run(debug=True, port=5000)
