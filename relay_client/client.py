# relay_client/client.py
import argparse
import base64
import json
import sys
import uuid as _uuid
from typing import Optional

import requests
import urllib3

DEFAULT_SERVER = "http://127.0.0.1:5000"


class RelayError(Exception):
    """Non-2xx answer from the relay."""

    def __init__(self, status: int, error: Optional[str] = None, reason: Optional[str] = None,
                 body: Optional[dict] = None):
        super().__init__(f"{status} {error or 'error'}" + (f" ({reason})" if reason else ""))
        self.status = status
        self.error = error
        self.reason = reason
        self.body = body or {}


class RelayClient:
    """Thin wrapper around the relay's HTTP/JSON contract."""

    def __init__(self, base_url: str = DEFAULT_SERVER, verify_ssl: bool = True, timeout: float = 10,
                 session: Optional[requests.Session] = None):
        # Whitespace und abschließenden Slash entfernen, sonst entsteht "//"
        self.base_url = base_url.strip().rstrip("/")
        self.verify_ssl = verify_ssl
        self.timeout = timeout
        self.session = session or requests.Session()
        if not verify_ssl:
            urllib3.disable_warnings(urllib3.exceptions.InsecureRequestWarning)

    def _call(self, method: str, path: str, body: Optional[dict] = None, params: Optional[dict] = None) -> dict:
        r = self.session.request(method, f"{self.base_url}{path}", json=body, params=params,
                                 timeout=self.timeout, verify=self.verify_ssl)
        try:
            data = r.json()
        except ValueError:
            data = {}
        if not r.ok:
            raise RelayError(r.status_code, data.get("error"), data.get("reason"), data)
        return data

    def health(self) -> dict:
        return self._call("GET", "/health")

    def update_presence(self, identity: str, state: str, device: str = "unknown",
                        timestamp: Optional[int] = None):
        body = {"identity": identity, "state": state, "device": device}
        if timestamp is not None:
            body["timestamp"] = timestamp
        self._call("POST", "/presence/update", body)

    def create_request(self, from_identity: str, to_identity: str) -> dict:
        return self._call("POST", "/requests/create", {"from_identity": from_identity, "to_identity": to_identity})

    def request_inbox(self, identity: str) -> list:
        return self._call("GET", "/requests/inbox", params={"identity": identity})["requests"]

    def respond(self, to_identity: str, request_id: str, decision: str) -> str:
        data = self._call("POST", "/requests/respond",
                          {"to_identity": to_identity, "request_id": request_id, "decision": decision})
        return data["status"]

    def token_inbox(self, identity: str) -> list:
        return self._call("GET", "/tokens/inbox", params={"identity": identity})["tokens"]

    def ack_token(self, identity: str, token: str):
        self._call("POST", "/tokens/ack", {"identity": identity, "token": token})

    def get_presence(self, requester: str, target: str, token: str) -> Optional[dict]:
        data = self._call("POST", "/presence/get", {
            "requester_identity": requester,
            "target_identity": target,
            "capability_token": token,
        })
        return data["presence"]

    def update_profile(self, identity: str, display_name: str, handle: str, avatar: Optional[bytes] = None):
        body = {"identity": identity, "displayName": display_name, "handle": handle}
        if avatar is not None:
            body["avatarBlob"] = base64.b64encode(avatar).decode()
        self._call("POST", "/profile/update", body)

    def get_profile(self, identity: str) -> Optional[dict]:
        return self._call("GET", "/profile/get", params={"identity": identity})["profile"]


def build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(prog="relay-client")
    ap.add_argument("--server", default=DEFAULT_SERVER, help=f"Relay URL (default: {DEFAULT_SERVER})")
    ap.add_argument("--identity", help="Own identity (8-128 chars)")
    ap.add_argument("--no-verify-ssl", action="store_true",
                    help="Disable SSL verification (for self-signed certs)")
    sub = ap.add_subparsers(dest="cmd", required=True)

    sub.add_parser("new-identity")
    sub.add_parser("health")
    p = sub.add_parser("presence")
    p.add_argument("--state", required=True, choices=["active", "away", "asleep"])
    p.add_argument("--device", default="unknown")
    p = sub.add_parser("request")
    p.add_argument("--to", required=True)
    sub.add_parser("inbox")
    p = sub.add_parser("respond")
    p.add_argument("--id", required=True)
    p.add_argument("--decision", required=True, choices=["allow", "deny"])
    sub.add_parser("tokens")
    p = sub.add_parser("ack")
    p.add_argument("--token", required=True)
    p = sub.add_parser("peer")
    p.add_argument("--target", required=True)
    p.add_argument("--token", required=True)
    p = sub.add_parser("profile-set")
    p.add_argument("--name", required=True)
    p.add_argument("--handle", required=True)
    p.add_argument("--avatar", help="Path to an image file")
    p = sub.add_parser("profile-get")
    p.add_argument("--of", help="Identity to look up (default: own)")
    return ap


def main(argv=None, client: Optional[RelayClient] = None) -> int:
    ap = build_parser()
    args = ap.parse_args(argv)

    if args.cmd == "new-identity":
        # Identities werden lokal erzeugt, der Server vergibt keine
        print(str(_uuid.uuid4()))
        return 0

    if args.cmd not in ("health", "profile-get") and not args.identity:
        ap.error("--identity is required for this command")
    if args.cmd == "profile-get" and not (args.of or args.identity):
        ap.error("--of or --identity is required")

    client = client or RelayClient(args.server, verify_ssl=not args.no_verify_ssl)
    me = args.identity
    try:
        if args.cmd == "health":
            out = client.health()
        elif args.cmd == "presence":
            client.update_presence(me, args.state, args.device)
            out = {"ok": True}
        elif args.cmd == "request":
            out = client.create_request(me, args.to)
        elif args.cmd == "inbox":
            out = client.request_inbox(me)
        elif args.cmd == "respond":
            out = {"status": client.respond(me, args.id, args.decision)}
        elif args.cmd == "tokens":
            out = client.token_inbox(me)
        elif args.cmd == "ack":
            client.ack_token(me, args.token)
            out = {"ok": True}
        elif args.cmd == "peer":
            out = client.get_presence(me, args.target, args.token)
        elif args.cmd == "profile-set":
            avatar = None
            if args.avatar:
                with open(args.avatar, "rb") as f:
                    avatar = f.read()
            client.update_profile(me, args.name, args.handle, avatar)
            out = {"ok": True}
        else:
            out = client.get_profile(args.of or me)
    except RelayError as e:
        print(f"❌ {e}", file=sys.stderr)
        return 1
    except requests.RequestException as e:
        print(f"❌ Relay not reachable: {e}", file=sys.stderr)
        return 2

    print(json.dumps(out, indent=2))
    return 0


if __name__ == "__main__":
    sys.exit(main())
