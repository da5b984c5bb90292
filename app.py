# app.py
"""
Flask JSON API over the relay functions in functions.py.
Each browser session gets a random id in the signed Flask cookie; all flow
state (upstream cookies, scid, token value) stays in the server-side store.
"""

import logging
import os
import secrets
import uuid

from flask import Flask, Response, current_app, jsonify, request, session

from functions import (
    PROXY_URL,
    VERIFY_TLS,
    DirectTransport,
    ECourtsError,
    MemorySessionStore,
    ValidationError,
    build_transport,
    fetch_benches,
    fetch_captcha,
    fetch_hc_captcha,
    init_case_search,
    list_districts,
    list_states,
    select_district_court,
    submit_search,
    submit_search_by_cin,
    to_data_uri,
    verify_case,
)

logger = logging.getLogger(__name__)


def _is_production() -> bool:
    return os.getenv("APP_ENV", "").strip().lower() == "production"


def _session_id() -> str:
    sid = session.get("sid")
    if not sid:
        sid = uuid.uuid4().hex
        session["sid"] = sid
        session.permanent = True
    return sid


def _json_body() -> dict:
    body = request.get_json(silent=True)
    if body is None:
        return {}
    if not isinstance(body, dict):
        raise ValidationError("Request body must be a JSON object")
    return body


def _store():
    return current_app.extensions["ecourts"]["store"]


def _transport():
    return current_app.extensions["ecourts"]["transport"]


def _captcha_transport():
    return current_app.extensions["ecourts"]["captcha_transport"]


def create_app(store=None, transport=None, captcha_transport=None, secret_key=None) -> Flask:
    """
    Build the API. The transport is chosen here, once, from configuration;
    tests pass their own store and transports.
    """
    app = Flask(__name__)

    key = secret_key or os.getenv("SECRET_KEY")
    if not key:
        logger.warning("SECRET_KEY is not set; sessions will not survive a restart.")
        key = secrets.token_hex(32)
    app.secret_key = key
    app.config.update(SESSION_COOKIE_HTTPONLY=True, SESSION_COOKIE_SAMESITE="Lax")

    app.extensions["ecourts"] = {
        "store": store
        if store is not None
        else MemorySessionStore(max_age=app.permanent_session_lifetime.total_seconds()),
        "transport": transport if transport is not None else build_transport(),
        "captcha_transport": captcha_transport
        if captcha_transport is not None
        else DirectTransport(proxy_url=PROXY_URL or None, verify=VERIFY_TLS),
    }

    # ---------- error handling ----------

    @app.errorhandler(ECourtsError)
    def handle_ecourts_error(e: ECourtsError):
        if e.status_code >= 500:
            logger.error("[%s %s] %s: %s", request.method, request.path, type(e).__name__, e.message)
        else:
            logger.warning("[%s %s] %s: %s", request.method, request.path, type(e).__name__, e.message)
        body = {"error": e.message}
        if e.details and (e.status_code < 500 or not _is_production()):
            body["details"] = e.details
        return jsonify(body), e.status_code

    @app.errorhandler(Exception)
    def handle_unexpected(e: Exception):
        # 404/405 and other client-side HTTP errors as JSON
        code = getattr(e, "code", None)
        if isinstance(code, int) and 400 <= code < 500:
            return jsonify({"error": getattr(e, "description", str(e))}), code
        logger.exception("[%s %s] Unhandled error", request.method, request.path)
        body = {"error": "Internal server error"}
        if not _is_production():
            body["details"] = str(e)
        return jsonify(body), 500

    # ---------- district court flow ----------

    @app.get("/health")
    def health():
        return jsonify({"status": "ok", "transport": _transport().name})

    @app.get("/states")
    def states():
        logger.info("[Server] GET /states")
        result = list_states(_store(), _session_id(), _transport())
        return jsonify({"states": result})

    @app.post("/districts")
    def districts():
        logger.info("[Server] POST /districts")
        body = _json_body()
        result = list_districts(_store(), _session_id(), _transport(), body.get("state_code"))
        return jsonify({"districts": result})

    @app.post("/select-district-court")
    def select_court():
        logger.info("[Server] POST /select-district-court")
        body = _json_body()
        select_district_court(_store(), _session_id(), body.get("districtCourtBaseUrl"))
        return jsonify({"message": "District court URL set successfully."})

    @app.post("/case-search-init")
    def case_search_init():
        logger.info("[Server] POST /case-search-init")
        return jsonify(init_case_search(_store(), _session_id(), _transport()))

    @app.get("/captcha/<scid>")
    def captcha(scid):
        logger.info("[Server] GET /captcha")
        image, mime = fetch_captcha(_store(), _session_id(), scid, transport=_captcha_transport())
        if request.args.get("format") == "base64":
            return jsonify({"captchaImage": to_data_uri(image, mime)})
        return Response(image, mimetype=mime, headers={"Cache-Control": "no-store"})

    @app.post("/search-case")
    def search_case():
        logger.info("[Server] POST /search-case (Litigant Search)")
        body = dict(_json_body())
        captcha_value = body.pop("captchaValue", None)
        results = submit_search(_store(), _session_id(), _transport(), captcha_value, body)
        return jsonify({"results": results})

    @app.post("/search-case-by-cin")
    def search_case_by_cin():
        logger.info("[Server] POST /search-case-by-cin")
        body = _json_body()
        return jsonify(submit_search_by_cin(_store(), _session_id(), _transport(), body.get("cino")))

    # ---------- High Court flow ----------

    @app.post("/fetchBenches")
    def benches():
        logger.info("[Server] POST /fetchBenches")
        body = _json_body()
        sid = _session_id()
        result = fetch_benches(_store(), sid, _transport(), body.get("selectedHighcourt"))
        return jsonify({"benches": result, "sessionID": sid})

    @app.post("/fetchCaptcha")
    def hc_captcha():
        logger.info("[Server] POST /fetchCaptcha")
        body = _json_body()
        sid = _session_id()
        image = fetch_hc_captcha(_store(), sid, _transport(), body.get("selectedBench"))
        return jsonify({"captchaImage": image, "sessionID": sid})

    @app.post("/api/case")
    def case_verification():
        logger.info("[Server] POST /api/case")
        body = _json_body()
        sid = _session_id()
        data = verify_case(_store(), sid, _transport(), body)
        return jsonify({"data": data, "sessionID": sid})

    return app
