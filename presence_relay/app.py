import logging
import sys
import time
from dataclasses import dataclass
from typing import Callable, Optional

from flask import Blueprint, Flask, current_app, jsonify, request
from werkzeug.exceptions import HTTPException, InternalServerError

from .config import ConfigError, Settings
from .scheduler import CleanupScheduler
from .storage import (
    ConsentRequestStore,
    InboxEntry,
    PresenceStore,
    ProfileStore,
    TokenInbox,
    now_ms,
)
from .tokens import READ_PRESENCE, CapabilityTokenService
from .validation import (
    ValidationError,
    coerce_timestamp,
    validate_decision,
    validate_device,
    validate_distinct,
    validate_identity,
    validate_profile,
    validate_request_id,
    validate_state,
    validate_token,
)

log = logging.getLogger(__name__)

api = Blueprint("relay", __name__)


@dataclass
class Relay:
    """Service root: one instance per process, created by create_app()."""
    settings: Settings
    clock: Callable[[], float]
    tokens: CapabilityTokenService
    presence: PresenceStore
    requests: ConsentRequestStore
    token_inbox: TokenInbox
    profiles: ProfileStore
    scheduler: CleanupScheduler

    def now_ms(self) -> int:
        return now_ms(self.clock)


def build_relay(settings: Settings, clock: Callable[[], float] = time.time) -> Relay:
    presence = PresenceStore(ttl_ms=settings.presence_ttl_seconds * 1000, clock=clock)
    requests = ConsentRequestStore(ttl_ms=settings.request_ttl_seconds * 1000, clock=clock)
    token_inbox = TokenInbox(clock=clock)
    return Relay(
        settings=settings,
        clock=clock,
        tokens=CapabilityTokenService(settings.server_secret, ttl_seconds=settings.token_ttl_seconds, clock=clock),
        presence=presence,
        requests=requests,
        token_inbox=token_inbox,
        profiles=ProfileStore(clock=clock),
        scheduler=CleanupScheduler(presence, requests, token_inbox,
                                   interval=settings.cleanup_interval_seconds, clock=clock),
    )


def _relay() -> Relay:
    return current_app.extensions["relay"]


def _error(code: str, status: int, /, **extra):
    return jsonify({"ok": False, "error": code, **extra}), status


def _body() -> dict:
    data = request.get_json(force=True, silent=True)
    if not isinstance(data, dict):
        raise ValidationError("bad_json", "Body must be a JSON object")
    return data


def _field(data: dict, name: str, legacy: str):
    # Ältere Clients senden noch user_id-Felder
    return data[name] if name in data else data.get(legacy)


def _query_identity() -> str:
    return validate_identity(request.args.get("identity", request.args.get("user_id")))


@api.errorhandler(ValidationError)
def _validation_failed(e: ValidationError):
    log.warning(f"Validation error on {request.path}: {e.code} ({e.detail})")
    return _error(e.code, 400)


@api.get("/")
def index():
    return "Presence relay", 200, {"Content-Type": "text/plain; charset=utf-8"}


@api.get("/health")
def health():
    return jsonify({"ok": True, "ts": _relay().now_ms()})


@api.post("/presence/update")
def presence_update():
    """
    Body: { "identity": "...", "state": "active|away|asleep", "device"?: "mac", "timestamp"?: unixSeconds }
    """
    data = _body()
    identity = validate_identity(_field(data, "identity", "user_id"))
    state = validate_state(data.get("state"))
    device = validate_device(data.get("device"))

    _relay().presence.update(identity, state, device, coerce_timestamp(data.get("timestamp")))
    return jsonify({"ok": True})


@api.post("/requests/create")
def requests_create():
    """
    Body: { "from_identity": "...", "to_identity": "..." }
    Creates a pending request visible to the recipient via /requests/inbox.
    """
    data = _body()
    from_identity = validate_identity(_field(data, "from_identity", "from_user_id"))
    to_identity = validate_identity(_field(data, "to_identity", "to_user_id"))
    validate_distinct(from_identity, to_identity)

    r = _relay().requests.create(from_identity, to_identity)
    log.info(f"Consent request {r.id} created")
    return jsonify({"ok": True, "request_id": r.id, "expiresAt": r.expires_at})


@api.get("/requests/inbox")
def requests_inbox():
    identity = _query_identity()
    pending = _relay().requests.inbox(identity)
    return jsonify({"ok": True, "requests": [r.to_dict() for r in pending]})


@api.post("/requests/respond")
def requests_respond():
    """
    Body: { "to_identity": "...", "request_id": "...", "decision": "allow|deny" }

    Bei allow wird ein Capability Token für den Anfragenden ausgestellt und
    in dessen Token-Inbox gelegt.
    """
    data = _body()
    to_identity = validate_identity(_field(data, "to_identity", "to_user_id"))
    request_id = validate_request_id(data.get("request_id"))
    decision = validate_decision(data.get("decision"))

    relay = _relay()
    outcome = relay.requests.respond(to_identity, request_id, decision)
    if outcome.error == "request_not_found":
        return _error("request_not_found", 404)
    if outcome.error == "request_expired":
        return _error("request_expired", 410)
    if outcome.error == "already_responded":
        return _error("already_responded", 409, status=outcome.status)

    r = outcome.request
    log.info(f"Consent request {r.id} {r.status}")
    if decision == "allow":
        token = relay.tokens.issue(subject=r.from_identity, resource=r.to_identity, scope=READ_PRESENCE)
        issued = relay.now_ms()
        relay.token_inbox.push(r.from_identity, InboxEntry(
            from_identity=r.to_identity,
            token=token,
            issued_at=issued,
            expires_at=issued + relay.settings.token_ttl_seconds * 1000,
        ))
    return jsonify({"ok": True, "status": r.status})


@api.get("/tokens/inbox")
def tokens_inbox():
    identity = _query_identity()
    entries = _relay().token_inbox.list(identity)
    return jsonify({"ok": True, "tokens": [e.to_dict() for e in entries]})


@api.post("/tokens/ack")
def tokens_ack():
    data = _body()
    identity = validate_identity(_field(data, "identity", "user_id"))
    token = validate_token(data.get("token"))

    _relay().token_inbox.ack(identity, token)
    return jsonify({"ok": True})


@api.post("/presence/get")
def presence_get():
    """
    Body: { "requester_identity": "...", "target_identity": "...", "capability_token": "..." }
    Returns the target's latest presence if the token authorizes the requester.
    """
    data = _body()
    requester = validate_identity(_field(data, "requester_identity", "requester_user_id"))
    target = validate_identity(_field(data, "target_identity", "target_user_id"))

    relay = _relay()
    v = relay.tokens.verify(data.get("capability_token"), requester, target, READ_PRESENCE)
    if not v.ok:
        log.warning(f"Presence read denied: {v.reason}")
        return _error("unauthorized", 403, reason=v.reason)

    record = relay.presence.get(target)
    return jsonify({"ok": True, "presence": record.to_dict() if record else None})


@api.post("/profile/update")
def profile_update():
    """
    Body: { "identity": "...", "displayName": "...", "handle": "...", "avatarBlob"?: "<base64>" }
    Whole-record upsert, no authorization (profiles are public).
    """
    data = _body()
    identity = validate_identity(_field(data, "identity", "user_id"))
    display_name, handle, avatar = validate_profile(
        data.get("displayName"), data.get("handle"), _field(data, "avatarBlob", "avatarData")
    )

    _relay().profiles.update(identity, display_name, handle, avatar)
    return jsonify({"ok": True})


@api.get("/profile/get")
def profile_get():
    identity = _query_identity()
    profile = _relay().profiles.get(identity)
    return jsonify({"ok": True, "profile": profile.to_dict() if profile else None})


def _install_cors(app: Flask, origin: str):
    @app.before_request
    def _preflight():
        if request.method == "OPTIONS":
            return "", 204

    @app.after_request
    def _cors_headers(response):
        response.headers["Access-Control-Allow-Origin"] = origin
        response.headers["Access-Control-Allow-Methods"] = "GET,POST,OPTIONS"
        response.headers["Access-Control-Allow-Headers"] = "Content-Type"
        response.headers["Vary"] = "Origin"
        return response


def _install_error_handlers(app: Flask):
    codes = {404: "not_found", 405: "method_not_allowed", 413: "payload_too_large"}

    @app.errorhandler(HTTPException)
    def _http_error(e: HTTPException):
        return _error(codes.get(e.code, "bad_request"), e.code)

    @app.errorhandler(InternalServerError)
    def _internal_error(e: InternalServerError):
        log.exception(f"Unhandled error on {request.path}", exc_info=e.original_exception or e)
        return _error("internal_error", 500)


def create_app(settings: Optional[Settings] = None, clock: Callable[[], float] = time.time) -> Flask:
    """Builds the Flask app. Raises ConfigError if SERVER_SECRET is missing."""
    if settings is None:
        settings = Settings.from_env()
    settings.validate()

    app = Flask(__name__)
    app.config["MAX_CONTENT_LENGTH"] = settings.max_body_bytes
    app.extensions["relay"] = build_relay(settings, clock)
    app.register_blueprint(api)
    if settings.cors_origin:
        _install_cors(app, settings.cors_origin)
    _install_error_handlers(app)
    return app


def main():
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(message)s")
    settings = Settings.from_env()
    try:
        app = create_app(settings)
    except ConfigError as e:
        log.error(str(e))
        sys.exit(1)
    logging.getLogger().setLevel(settings.log_level)

    relay = app.extensions["relay"]
    relay.scheduler.start()
    log.info(f"Presence relay listening on {settings.host}:{settings.port}")
    try:
        # TLS terminiert ein vorgeschalteter Proxy
        app.run(debug=False, host=settings.host, port=settings.port, threaded=True)
    finally:
        relay.scheduler.stop()


if __name__ == "__main__":
    main()
