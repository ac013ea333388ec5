"""Pairing store records, the store interface and an in-memory implementation."""

import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, replace
from typing import Dict, Optional


@dataclass(frozen=True)
class PeerIdentity:
    """A remote user's public profile as known to this client."""
    id: str
    display_name: str
    email: str
    phone: str


@dataclass(frozen=True)
class KeyPairRecord:
    """Our key material for a pairing we initiated. The private key never leaves the store."""
    peer_id: str
    local_public_key: str
    local_private_key: str
    acknowledged: bool = False


@dataclass(frozen=True)
class IncomingKeyRequest:
    """The peer's half of a pairing we did not initiate."""
    peer_id: str
    peer_profile: PeerIdentity
    peer_public_key: str


@dataclass(frozen=True)
class SharedSecret:
    peer_id: str
    secret: bytes


class PairingStore(ABC):
    """
    Persistence contract used by the pairing protocol.

    Write operations return True on success and False on failure; read
    operations return the record or None. Implementations must not raise
    across this boundary, and a failed write must leave no partial record.
    """

    @abstractmethod
    def upsert_peer_identity(self, peer: PeerIdentity) -> bool: ...

    @abstractmethod
    def get_peer(self, peer_id: str) -> Optional[PeerIdentity]: ...

    @abstractmethod
    def save_key_pair(self, record: KeyPairRecord) -> bool: ...

    @abstractmethod
    def get_key_pair(self, peer_id: str) -> Optional[KeyPairRecord]: ...

    @abstractmethod
    def mark_acknowledged(self, peer_id: str) -> bool: ...

    @abstractmethod
    def save_incoming_request(self, request: IncomingKeyRequest) -> bool: ...

    @abstractmethod
    def get_incoming_request(self, peer_id: str) -> Optional[IncomingKeyRequest]: ...

    @abstractmethod
    def discard_incoming_request(self, peer_id: str) -> bool: ...

    @abstractmethod
    def save_shared_secret(self, secret: SharedSecret) -> bool: ...

    @abstractmethod
    def get_shared_secret(self, peer_id: str) -> Optional[SharedSecret]: ...


class MemoryPairingStore(PairingStore):
    """Dictionary-backed store for tests and throwaway sessions."""

    def __init__(self):
        self.lock = threading.Lock()  # guards the dicts below
        self.peers: Dict[str, PeerIdentity] = {}
        self.key_pairs: Dict[str, KeyPairRecord] = {}
        self.incoming: Dict[str, IncomingKeyRequest] = {}
        self.secrets: Dict[str, SharedSecret] = {}

    def upsert_peer_identity(self, peer: PeerIdentity) -> bool:
        with self.lock:
            self.peers[peer.id] = peer
            return True

    def get_peer(self, peer_id: str) -> Optional[PeerIdentity]:
        with self.lock:
            return self.peers.get(peer_id)

    def save_key_pair(self, record: KeyPairRecord) -> bool:
        with self.lock:
            self.key_pairs[record.peer_id] = record
            return True

    def get_key_pair(self, peer_id: str) -> Optional[KeyPairRecord]:
        with self.lock:
            return self.key_pairs.get(peer_id)

    def mark_acknowledged(self, peer_id: str) -> bool:
        with self.lock:
            record = self.key_pairs.get(peer_id)
            if record is None:
                return False
            self.key_pairs[peer_id] = replace(record, acknowledged=True)
            return True

    def save_incoming_request(self, request: IncomingKeyRequest) -> bool:
        with self.lock:
            self.peers[request.peer_id] = request.peer_profile
            self.incoming[request.peer_id] = request
            return True

    def get_incoming_request(self, peer_id: str) -> Optional[IncomingKeyRequest]:
        with self.lock:
            return self.incoming.get(peer_id)

    def discard_incoming_request(self, peer_id: str) -> bool:
        with self.lock:
            self.incoming.pop(peer_id, None)
            return True

    def save_shared_secret(self, secret: SharedSecret) -> bool:
        with self.lock:
            if secret.peer_id in self.secrets:
                return False
            self.secrets[secret.peer_id] = secret
            return True

    def get_shared_secret(self, peer_id: str) -> Optional[SharedSecret]:
        with self.lock:
            return self.secrets.get(peer_id)
