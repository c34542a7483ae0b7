"""Flask HTTP surface for the parts lookup.

Run with:
    python serve.py
    # or
    FLASK_PORT=8080 python serve.py

Endpoints:
    GET  /api/search         - sold (default) or active listings as {items, meta}
    GET  /api/search-active  - same, forced to active listings
    GET  /api/search/debug   - upstream URL, status and byte count only
    GET  /api/verify         - marketplace account-deletion challenge
    POST /api/verify         - marketplace account-deletion notification
    GET  /api/profit         - flip profit calculator
    GET  /api/health         - health check
"""
from __future__ import annotations

import os
from typing import Any, Optional

try:
    from flask import Flask, jsonify, request
except ImportError:
    raise SystemExit(
        "Flask is required for the HTTP server.\n"
        "Install it with: pip install flask"
    )

from partflip import get_logger
from partflip.config import ScrapeSettings
from partflip.ebay_api import challenge_response
from partflip.models import MODE_ACTIVE, MODE_SOLD
from partflip.search import debug_search, search
from partflip.tiers import profit

LOGGER = get_logger()

app = Flask(__name__)

_TRUE_VALUES = {"1", "true", "yes", "y", "on"}


def _query_float(name: str) -> Optional[float]:
    raw = request.args.get(name)
    if raw is None or raw.strip() == "":
        return None
    try:
        return float(raw)
    except ValueError:
        return None


def _query_bool(name: str) -> bool:
    return request.args.get(name, "").strip().lower() in _TRUE_VALUES


def _search_args(mode: Optional[str] = None) -> dict[str, Any]:
    return {
        "year": request.args.get("year", ""),
        "make": request.args.get("make", ""),
        "model": request.args.get("model", ""),
        "details": request.args.get("details", ""),
        "mode": mode or request.args.get("mode") or MODE_SOLD,
        "junkyard": _query_bool("junkyard"),
        "limit": request.args.get("limit") or None,
    }


@app.route("/api/search")
def api_search():
    response = search(
        **_search_args(),
        fire_only=_query_bool("fire_only"),
        sort_high=_query_bool("sort_high"),
    )
    return jsonify(response.to_dict())


@app.route("/api/search-active")
def api_search_active():
    response = search(
        **_search_args(MODE_ACTIVE),
        fire_only=_query_bool("fire_only"),
        sort_high=_query_bool("sort_high"),
    )
    return jsonify(response.to_dict())


@app.route("/api/search/debug")
def api_search_debug():
    return jsonify(debug_search(**_search_args()))


@app.route("/api/verify", methods=["GET"])
def api_verify_challenge():
    challenge = request.args.get("challenge_code")
    if not challenge:
        return jsonify({"error": "Missing challenge_code"}), 400
    token = ScrapeSettings.from_env().verification_token
    if not token:
        return jsonify({"error": "Server misconfiguration: no EBAY_VERIFICATION_TOKEN"}), 500
    return jsonify({"challengeResponse": challenge_response(challenge, token, request.base_url)})


@app.route("/api/verify", methods=["POST"])
def api_verify_notification():
    payload = request.get_json(silent=True)
    if payload is None:
        return jsonify({"error": "Invalid JSON"}), 400
    LOGGER.info("Account deletion notification: %s", payload)
    return jsonify({"received": True})


@app.route("/api/profit")
def api_profit():
    purchase = _query_float("purchase")
    sold = _query_float("sold")
    shipping = _query_float("shipping")
    fees = _query_float("fees")
    net = profit(purchase, sold, shipping, fees)
    return jsonify({
        "purchase": purchase or 0.0,
        "sold": sold or 0.0,
        "shipping": shipping or 0.0,
        "fees": fees or 0.0,
        "profit": net,
        "loss": net < 0,
    })


@app.route("/api/health")
def api_health():
    return jsonify({"status": "ok"})


if __name__ == "__main__":
    host = os.getenv("FLASK_HOST", "127.0.0.1").strip() or "127.0.0.1"
    port = int(os.getenv("FLASK_PORT", "5000"))
    debug = os.getenv("FLASK_DEBUG", "").lower() in ("1", "true")
    print(f"partflip server running on http://{host}:{port}")
    print("Endpoints: /api/search, /api/search-active, /api/search/debug, /api/verify, /api/profit, /api/health")
    app.run(host=host, port=port, debug=debug)
