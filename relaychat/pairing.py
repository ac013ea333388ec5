"""
Relayed Diffie-Hellman friend pairing.

Two clients that only share a relay agree on a secret in rounds:

    initiator                      relay                      responder
    initiate(peer)     -- FriendRequest -->     FriendRequestIncoming -->
                       <-- RequestAcknowledged --
                       <-- HandshakeComplete (responder public key) --

Every pairing message names the *other* party in `userId`, from the local
point of view. State is read back from the pairing store at each step, so
every handler can tell a duplicate or late message from a fresh one and skip
it. Only replies that could not be sent are tracked in memory; repeating the
step that produced them sends them again with the same key.
"""

import enum
import logging
import threading
from contextlib import contextmanager
from typing import Dict, Iterator, Mapping, Optional

from relaychat.common.errors import ProtocolViolation, StoreError
from relaychat.common.protocol import Message, MessageKind
from relaychat.common.utils import sha256_hex
from relaychat.crypto import dh
from relaychat.notify import NotificationSink
from relaychat.storage.store import (
    IncomingKeyRequest,
    KeyPairRecord,
    PairingStore,
    PeerIdentity,
    SharedSecret,
)

logger = logging.getLogger(__name__)


class PairingState(enum.Enum):
    NO_RELATIONSHIP = "no_relationship"
    # initiator
    KEY_SENT = "key_sent"
    KEY_ACKNOWLEDGED = "key_acknowledged"
    # responder
    REQUEST_RECEIVED = "request_received"
    RESPONSE_SENT = "response_sent"
    # both
    SECRET_DERIVED = "secret_derived"


class PeerLocks:
    """
    One lock per peer id, so unrelated pairings never wait on each other.
    An entry only exists while some thread holds or waits for it, so ids
    that never reach the store do not pile up.
    """

    def __init__(self):
        self._guard = threading.Lock()
        # peer id -> [lock, number of threads holding or waiting]
        self._locks: Dict[str, list] = {}

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)

    @contextmanager
    def __call__(self, peer_id: str) -> Iterator[None]:
        with self._guard:
            entry = self._locks.get(peer_id)
            if entry is None:
                entry = self._locks[peer_id] = [threading.Lock(), 0]
            entry[1] += 1
        try:
            with entry[0]:
                yield
        finally:
            with self._guard:
                entry[1] -= 1
                if entry[1] == 0:
                    del self._locks[peer_id]


def _require(ok: bool, what: str) -> None:
    if not ok:
        raise StoreError(what)


def fingerprint(secret: bytes) -> str:
    """Short, displayable digest of a shared secret for out-of-band comparison."""
    return sha256_hex(secret)[:16]


def peer_from_fields(fields: Mapping[str, str]) -> PeerIdentity:
    return PeerIdentity(
        id=fields["userId"],
        display_name=fields["userName"],
        email=fields["email"],
        phone=fields["phone"],
    )


class FriendPairing:
    """
    The pairing state machine. Collaborators are explicit: a store, a
    sender (anything with send(Message) -> bool, normally the
    ConnectionManager) and a notification sink.

    Public operations and message handlers return True when they performed
    a transition and False for no-ops and aborted steps. They never raise
    for store failures, duplicates or out-of-place messages.
    """

    def __init__(self, store: PairingStore, sender, sink: Optional[NotificationSink] = None):
        self.store = store
        self.sender = sender
        self.sink = sink
        self.locks = PeerLocks()
        # Requests persisted whose acknowledgement could not be sent yet.
        self._unacknowledged = set()
        # Peers whose FriendRequest could not be sent; the key pair is in the store.
        self._unsent_requests = set()
        # peer id -> our public key, for completions that could not be sent.
        self._unsent_completions: Dict[str, str] = {}

    def register(self, dispatcher) -> None:
        dispatcher.register(MessageKind.USER_RESOLVED, self.on_user_resolved)
        dispatcher.register(MessageKind.FRIEND_REQUEST_INCOMING, self.on_friend_request)
        dispatcher.register(MessageKind.REQUEST_ACKNOWLEDGED, self.on_request_acknowledged)
        dispatcher.register(MessageKind.HANDSHAKE_COMPLETE, self.on_handshake_complete)

    # --- queries ---

    def state(self, peer_id: str) -> PairingState:
        """Current state of the relationship with peer_id, read from the store."""
        if self.store.get_shared_secret(peer_id) is not None:
            return PairingState.SECRET_DERIVED
        record = self.store.get_key_pair(peer_id)
        if record is not None:
            return PairingState.KEY_ACKNOWLEDGED if record.acknowledged else PairingState.KEY_SENT
        if self.store.get_incoming_request(peer_id) is not None:
            if peer_id in self._unacknowledged:
                return PairingState.REQUEST_RECEIVED
            return PairingState.RESPONSE_SENT
        return PairingState.NO_RELATIONSHIP

    # --- local events ---

    def initiate(self, peer: PeerIdentity) -> bool:
        """Starts a pairing with a peer whose profile was just accepted locally."""
        return self._run(peer.id, "initiate", self._initiate, peer)

    def accept(self, peer_id: str) -> bool:
        """Completes a pending incoming request from the responder side."""
        return self._run(peer_id, "accept", self._accept, peer_id)

    def decline(self, peer_id: str) -> bool:
        """Drops a pending incoming request. Abandonment policy is up to the caller."""
        return self._run(peer_id, "decline", self._decline, peer_id)

    # --- relay events ---

    def on_user_resolved(self, message: Message) -> bool:
        return self.initiate(peer_from_fields(message.fields))

    def on_friend_request(self, message: Message) -> bool:
        peer = peer_from_fields(message.fields)
        return self._run(peer.id, "friend request", self._receive_request, peer, message.fields["publicKey"])

    def on_request_acknowledged(self, message: Message) -> bool:
        peer_id = message.fields["userId"]
        return self._run(peer_id, "acknowledgement", self._receive_ack, peer_id)

    def on_handshake_complete(self, message: Message) -> bool:
        peer_id = message.fields["userId"]
        return self._run(peer_id, "handshake completion", self._complete, peer_id, message.fields["publicKey"])

    # --- transitions (called with the peer lock held) ---

    def _run(self, peer_id: str, step: str, transition, *args) -> bool:
        with self.locks(peer_id):
            try:
                return transition(*args)
            except StoreError as e:
                logger.error("Pairing %s with %s aborted, store failure: %s", step, peer_id, e)
                self._notify("store_error", {"peer_id": peer_id, "step": step, "error": str(e)})
                return False
            except ProtocolViolation as e:
                logger.warning("Ignoring %s for %s: %s", step, peer_id, e)
                return False

    def _initiate(self, peer: PeerIdentity) -> bool:
        # Key material for a peer is only valid once its identity is stored.
        _require(self.store.upsert_peer_identity(peer), f"could not store identity of {peer.id}")

        current = self.state(peer.id)
        if current is PairingState.KEY_SENT and peer.id in self._unsent_requests:
            record = self.store.get_key_pair(peer.id)
            logger.info("Re-sending friend request to %s", peer.id)
            return self._send_request(peer.id, record.local_public_key)
        if current is not PairingState.NO_RELATIONSHIP:
            logger.info("Not initiating with %s, relationship is %s", peer.id, current.value)
            return False

        public_key, private_key = dh.generate_encoded_key_pair()
        record = KeyPairRecord(peer.id, public_key, private_key, acknowledged=False)
        _require(self.store.save_key_pair(record), f"could not store key pair for {peer.id}")

        self._send_request(peer.id, public_key)
        self._notify("user_added", {"peer_id": peer.id, "display_name": peer.display_name})
        return True

    def _receive_request(self, peer: PeerIdentity, peer_public_key: str) -> bool:
        if self.store.get_shared_secret(peer.id) is not None:
            logger.debug("Friend request from %s after pairing completed", peer.id)
            return False
        pending = self.store.get_incoming_request(peer.id)
        if pending is not None and peer.id not in self._unacknowledged:
            logger.debug("Duplicate friend request from %s", peer.id)
            return False
        if pending is None:
            try:
                dh.decode_public_key(peer_public_key)
            except ValueError as e:
                raise ProtocolViolation(f"bad public key: {e}") from e
            request = IncomingKeyRequest(peer.id, peer, peer_public_key)
            _require(self.store.save_incoming_request(request), f"could not store request from {peer.id}")
            self._notify("friend_request", {"peer_id": peer.id, "display_name": peer.display_name})

        ack = MessageKind.REQUEST_ACKNOWLEDGED.build(userId=peer.id)
        if self.sender.send(ack):
            self._unacknowledged.discard(peer.id)
        else:
            logger.warning("Could not acknowledge request from %s", peer.id)
            self._unacknowledged.add(peer.id)
        return True

    def _receive_ack(self, peer_id: str) -> bool:
        current = self.state(peer_id)
        if current in (PairingState.KEY_ACKNOWLEDGED, PairingState.SECRET_DERIVED):
            logger.debug("Duplicate acknowledgement from %s (%s)", peer_id, current.value)
            return False
        if current is not PairingState.KEY_SENT:
            raise ProtocolViolation(f"acknowledgement while {current.value}")
        _require(self.store.mark_acknowledged(peer_id), f"could not mark {peer_id} acknowledged")
        self._notify("request_acknowledged", {"peer_id": peer_id})
        return True

    def _complete(self, peer_id: str, peer_public_key: str) -> bool:
        try:
            peer_key = dh.decode_public_key(peer_public_key)
        except ValueError as e:
            raise ProtocolViolation(f"bad public key: {e}") from e

        record = self.store.get_key_pair(peer_id)
        existing = self.store.get_shared_secret(peer_id)
        if existing is not None:
            if record is not None:
                self._check_recomputation(record, peer_key, existing)
            logger.debug("Handshake with %s already complete", peer_id)
            return False

        if record is not None:
            # Initiator: our half is the stored key pair.
            try:
                private_key = dh.decode_private_key(record.local_private_key)
                secret = dh.get_shared_secret(private_key, peer_key)
            except ValueError as e:
                raise ProtocolViolation(f"cannot derive secret: {e}") from e
            self._store_secret(peer_id, secret)
            return True

        if self.store.get_incoming_request(peer_id) is not None:
            # Responder completing on the fly: make our half now and send it back.
            private_key = dh.generate_key_pair()
            try:
                secret = dh.get_shared_secret(private_key, peer_key)
            except ValueError as e:
                raise ProtocolViolation(f"cannot derive secret: {e}") from e
            self._store_secret(peer_id, secret)
            self._send_completion(peer_id, dh.encode_public_key(private_key.public_key()))
            return True

        raise ProtocolViolation("no key was ever exchanged with this peer")

    def _accept(self, peer_id: str) -> bool:
        current = self.state(peer_id)
        if current is PairingState.SECRET_DERIVED:
            public_key = self._unsent_completions.get(peer_id)
            if public_key is not None:
                logger.info("Re-sending handshake completion to %s", peer_id)
                return self._send_completion(peer_id, public_key)
            logger.debug("Pairing with %s already complete", peer_id)
            return False
        request = self.store.get_incoming_request(peer_id)
        if request is None:
            raise ProtocolViolation(f"no pending request (relationship is {current.value})")

        private_key = dh.generate_key_pair()
        try:
            secret = dh.get_shared_secret(private_key, dh.decode_public_key(request.peer_public_key))
        except ValueError as e:
            raise ProtocolViolation(f"cannot derive secret: {e}") from e
        self._store_secret(peer_id, secret)
        self._send_completion(peer_id, dh.encode_public_key(private_key.public_key()))
        return True

    def _decline(self, peer_id: str) -> bool:
        if self.store.get_incoming_request(peer_id) is None:
            raise ProtocolViolation("no pending request")
        _require(self.store.discard_incoming_request(peer_id), f"could not discard request from {peer_id}")
        self._unacknowledged.discard(peer_id)
        self._notify("request_declined", {"peer_id": peer_id})
        return True

    # --- helpers ---

    def _store_secret(self, peer_id: str, secret: bytes) -> None:
        _require(
            self.store.save_shared_secret(SharedSecret(peer_id, secret)),
            f"could not store shared secret for {peer_id}",
        )
        if self.store.get_incoming_request(peer_id) is not None:
            if not self.store.discard_incoming_request(peer_id):
                logger.warning("Secret for %s stored but pending request not cleared", peer_id)
        self._unacknowledged.discard(peer_id)
        self._unsent_requests.discard(peer_id)
        logger.info("Shared secret established with %s", peer_id)
        self._notify("secret_derived", {"peer_id": peer_id, "fingerprint": fingerprint(secret)})

    def _send_request(self, peer_id: str, public_key: str) -> bool:
        request = MessageKind.FRIEND_REQUEST.build(userId=peer_id, publicKey=public_key)
        if self.sender.send(request):
            logger.info("Sent friend request to %s", peer_id)
            self._unsent_requests.discard(peer_id)
            return True
        logger.warning("Friend request to %s stored but not sent", peer_id)
        self._unsent_requests.add(peer_id)
        self._notify("send_failed", {"peer_id": peer_id, "kind": request.kind})
        return False

    def _send_completion(self, peer_id: str, public_key: str) -> bool:
        reply = MessageKind.HANDSHAKE_COMPLETE.build(userId=peer_id, publicKey=public_key)
        if self.sender.send(reply):
            self._unsent_completions.pop(peer_id, None)
            return True
        logger.warning("Secret for %s stored but completion not sent", peer_id)
        self._unsent_completions[peer_id] = public_key
        self._notify("send_failed", {"peer_id": peer_id, "kind": reply.kind})
        return False

    def _check_recomputation(self, record: KeyPairRecord, peer_key, existing: SharedSecret) -> None:
        try:
            private_key = dh.decode_private_key(record.local_private_key)
            recomputed = dh.get_shared_secret(private_key, peer_key)
        except ValueError as e:
            raise ProtocolViolation(f"cannot recompute secret: {e}") from e
        if recomputed != existing.secret:
            logger.error(
                "Secret conflict for %s: stored %s, completion implies %s; keeping stored secret",
                record.peer_id, fingerprint(existing.secret), fingerprint(recomputed),
            )
            self._notify("secret_conflict", {"peer_id": record.peer_id})

    def _notify(self, kind: str, payload: dict) -> None:
        if self.sink is not None:
            self.sink.notify(kind, payload)
