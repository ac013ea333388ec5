"""Test doubles shared by the test modules."""

import threading

from relaychat.notify import NotificationSink
from relaychat.storage.store import MemoryPairingStore


class RecordingSender:
    """Stands in for the ConnectionManager: keeps every sent message."""

    def __init__(self, ok=True):
        self.ok = ok
        self.sent = []

    def send(self, message):
        self.sent.append(message)
        return self.ok

    def of_kind(self, kind):
        return [m for m in self.sent if m.kind == kind.tag]


class RecordingSink(NotificationSink):
    def __init__(self):
        self.events = []
        self.changed = threading.Condition()

    def notify(self, kind, payload=None):
        with self.changed:
            self.events.append((kind, dict(payload or {})))
            self.changed.notify_all()

    def kinds(self):
        return [kind for kind, _ in self.events]

    def wait_for(self, kind, timeout=5.0):
        with self.changed:
            return self.changed.wait_for(lambda: kind in self.kinds(), timeout)


class FailingStore(MemoryPairingStore):
    """Memory store whose named write operations report failure."""

    def __init__(self, *failing):
        super().__init__()
        self.failing = set(failing)

    def upsert_peer_identity(self, peer):
        if "upsert_peer_identity" in self.failing:
            return False
        return super().upsert_peer_identity(peer)

    def save_key_pair(self, record):
        if "save_key_pair" in self.failing:
            return False
        return super().save_key_pair(record)

    def mark_acknowledged(self, peer_id):
        if "mark_acknowledged" in self.failing:
            return False
        return super().mark_acknowledged(peer_id)

    def save_incoming_request(self, request):
        if "save_incoming_request" in self.failing:
            return False
        return super().save_incoming_request(request)

    def save_shared_secret(self, secret):
        if "save_shared_secret" in self.failing:
            return False
        return super().save_shared_secret(secret)


class CountingStore(MemoryPairingStore):
    """Memory store that counts key pair writes."""

    def __init__(self):
        super().__init__()
        self.key_pairs_saved = 0

    def save_key_pair(self, record):
        with self.lock:
            self.key_pairs_saved += 1
        return super().save_key_pair(record)
