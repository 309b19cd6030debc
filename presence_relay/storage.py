"""
In-memory stores. Nothing is persisted; a restart empties every store.

Each store guards its maps with its own lock. Live handlers and the cleanup
sweep go through the same lock, so no reader ever sees a half-written record.
"""
import base64
import threading
import time
import uuid as _uuid
from dataclasses import dataclass, replace
from typing import Callable, Dict, List, Optional

PRESENCE_TTL_MS = 3 * 60 * 1000
REQUEST_TTL_MS = 24 * 60 * 60 * 1000

PENDING = "pending"
ALLOWED = "allowed"
DENIED = "denied"


def now_ms(clock: Callable[[], float]) -> int:
    return int(clock() * 1000)


@dataclass(frozen=True)
class PresenceRecord:
    identity: str
    state: str
    device: str
    client_timestamp: int  # Sekunden (Client)
    server_received_at: int  # ms (Server)

    def to_dict(self) -> dict:
        return {
            "identity": self.identity,
            "state": self.state,
            "device": self.device,
            "timestamp": self.client_timestamp,
        }


@dataclass(frozen=True)
class ConsentRequest:
    id: str
    from_identity: str
    to_identity: str
    created_at: int
    expires_at: int
    status: str = PENDING

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "from": self.from_identity,
            "to": self.to_identity,
            "createdAt": self.created_at,
            "expiresAt": self.expires_at,
            "status": self.status,
        }


@dataclass(frozen=True)
class RespondOutcome:
    """Result of ConsentRequestStore.respond; error is None on success."""
    error: Optional[str] = None
    status: Optional[str] = None
    request: Optional[ConsentRequest] = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass(frozen=True)
class InboxEntry:
    from_identity: str  # resource (der Freigebende)
    token: str
    issued_at: int
    expires_at: int

    def to_dict(self) -> dict:
        return {
            "from": self.from_identity,
            "token": self.token,
            "issuedAt": self.issued_at,
            "expiresAt": self.expires_at,
        }


@dataclass(frozen=True)
class ProfileRecord:
    identity: str
    display_name: str
    handle: str
    avatar_blob: Optional[bytes]
    updated_at: int

    def to_dict(self) -> dict:
        return {
            "identity": self.identity,
            "displayName": self.display_name,
            "handle": self.handle,
            "avatarBlob": base64.b64encode(self.avatar_blob).decode() if self.avatar_blob else None,
            "updatedAt": self.updated_at,
        }


class PresenceStore:
    def __init__(self, ttl_ms: int = PRESENCE_TTL_MS, clock: Callable[[], float] = time.time):
        self.ttl_ms = ttl_ms
        self._clock = clock
        self._lock = threading.Lock()
        self.records: Dict[str, PresenceRecord] = {}

    def update(self, identity: str, state: str, device: str,
               client_timestamp: Optional[int] = None) -> PresenceRecord:
        received = now_ms(self._clock)
        if client_timestamp is None:
            client_timestamp = received // 1000
        record = PresenceRecord(identity, state, device, client_timestamp, received)
        with self._lock:
            self.records[identity] = record
        return record

    def get(self, identity: str) -> Optional[PresenceRecord]:
        with self._lock:
            record = self.records.get(identity)
        if record is None or now_ms(self._clock) - record.server_received_at > self.ttl_ms:
            return None
        return record

    def sweep(self, now: int) -> int:
        with self._lock:
            stale = [uid for uid, r in self.records.items() if now - r.server_received_at > self.ttl_ms]
            for uid in stale:
                del self.records[uid]
        return len(stale)


class ConsentRequestStore:
    """Consent requests keyed by recipient, then by request id."""

    def __init__(self, ttl_ms: int = REQUEST_TTL_MS, clock: Callable[[], float] = time.time):
        self.ttl_ms = ttl_ms
        self._clock = clock
        self._lock = threading.Lock()
        self.by_recipient: Dict[str, Dict[str, ConsentRequest]] = {}

    def create(self, from_identity: str, to_identity: str) -> Optional[ConsentRequest]:
        """Returns None for a request to oneself; nothing is stored then."""
        # Keine Deduplizierung: mehrere offene Anfragen pro Paar sind erlaubt
        if from_identity == to_identity:
            return None
        created = now_ms(self._clock)
        request = ConsentRequest(
            id=str(_uuid.uuid4()),
            from_identity=from_identity,
            to_identity=to_identity,
            created_at=created,
            expires_at=created + self.ttl_ms,
        )
        with self._lock:
            self.by_recipient.setdefault(to_identity, {})[request.id] = request
        return request

    def inbox(self, to_identity: str) -> List[ConsentRequest]:
        now = now_ms(self._clock)
        with self._lock:
            requests = list(self.by_recipient.get(to_identity, {}).values())
        return [r for r in requests if r.status == PENDING and now <= r.expires_at]

    def respond(self, to_identity: str, request_id: str, decision: str) -> RespondOutcome:
        """
        Records the one and only decision for a request.

        The lookup, the expiry/status checks and the transition happen under
        the store lock, so racing allow/deny calls yield one terminal status.
        """
        now = now_ms(self._clock)
        with self._lock:
            requests = self.by_recipient.get(to_identity)
            request = requests.get(request_id) if requests else None
            if request is None or request.to_identity != to_identity:
                return RespondOutcome(error="request_not_found")
            if now > request.expires_at:
                del requests[request_id]
                if not requests:
                    del self.by_recipient[to_identity]
                return RespondOutcome(error="request_expired")
            if request.status != PENDING:
                return RespondOutcome(error="already_responded", status=request.status, request=request)
            decided = replace(request, status=ALLOWED if decision == "allow" else DENIED)
            requests[request_id] = decided
        return RespondOutcome(status=decided.status, request=decided)

    def sweep(self, now: int) -> int:
        removed = 0
        with self._lock:
            for to_identity in list(self.by_recipient):
                requests = self.by_recipient[to_identity]
                for rid in [rid for rid, r in requests.items() if now > r.expires_at]:
                    del requests[rid]
                    removed += 1
                if not requests:
                    del self.by_recipient[to_identity]
        return removed


class TokenInbox:
    """Per-recipient queue of issued capability tokens awaiting pickup."""

    def __init__(self, clock: Callable[[], float] = time.time):
        self._clock = clock
        self._lock = threading.Lock()
        self.queues: Dict[str, List[InboxEntry]] = {}

    def push(self, recipient: str, entry: InboxEntry) -> None:
        with self._lock:
            self.queues.setdefault(recipient, []).append(entry)

    def list(self, recipient: str) -> List[InboxEntry]:
        now = now_ms(self._clock)
        with self._lock:
            entries = list(self.queues.get(recipient, []))
        return [e for e in entries if now <= e.expires_at]

    def ack(self, recipient: str, token: str) -> None:
        # Idempotent: unbekannte Tokens sind kein Fehler
        with self._lock:
            kept = [e for e in self.queues.get(recipient, []) if e.token != token]
            if kept:
                self.queues[recipient] = kept
            else:
                self.queues.pop(recipient, None)

    def sweep(self, now: int) -> int:
        removed = 0
        with self._lock:
            for recipient in list(self.queues):
                entries = self.queues[recipient]
                kept = [e for e in entries if now <= e.expires_at]
                removed += len(entries) - len(kept)
                if kept:
                    self.queues[recipient] = kept
                else:
                    del self.queues[recipient]
        return removed


class ProfileStore:
    """Public display metadata. Profiles never expire."""

    def __init__(self, clock: Callable[[], float] = time.time):
        self._clock = clock
        self._lock = threading.Lock()
        self.profiles: Dict[str, ProfileRecord] = {}

    def update(self, identity: str, display_name: str, handle: str,
               avatar_blob: Optional[bytes] = None) -> ProfileRecord:
        record = ProfileRecord(
            identity=identity,
            display_name=display_name.strip(),
            handle=handle.strip(),
            avatar_blob=avatar_blob,
            updated_at=now_ms(self._clock),
        )
        with self._lock:
            self.profiles[identity] = record
        return record

    def get(self, identity: str) -> Optional[ProfileRecord]:
        with self._lock:
            return self.profiles.get(identity)
