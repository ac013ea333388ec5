"""Relay client: wires connection, dispatcher and pairing, plus a console front end."""

import argparse
import logging
import threading
from typing import Optional

from relaychat.common.errors import TransportError
from relaychat.common.protocol import Message, MessageKind
from relaychat.common.utils import b64d, b64e, now_ms
from relaychat.config import Settings, build_tls_context, load_settings
from relaychat.crypto import aes, dh
from relaychat.net.connection import ConnectionManager
from relaychat.net.dispatcher import Dispatcher
from relaychat.notify import LogNotificationSink, NotificationSink, QueueNotificationSink
from relaychat.pairing import FriendPairing, peer_from_fields
from relaychat.storage.db import MySQLPairingStore
from relaychat.storage.store import MemoryPairingStore, PairingStore, PeerIdentity

logger = logging.getLogger(__name__)


def _chat_aad(sender: str, recipient: str) -> bytes:
    return f"{sender}|{recipient}".encode("utf-8")


class RelayClient:
    """
    One logged-in participant. The store and sink are supplied by the caller;
    everything else is built here and passed explicitly.
    """

    def __init__(self, store: PairingStore, sink: Optional[NotificationSink] = None,
                 settings: Optional[Settings] = None):
        self.settings = settings or Settings()
        self.store = store
        self.sink = sink or LogNotificationSink()
        self.user: Optional[PeerIdentity] = None  # set on AuthSuccess
        self.dispatcher = Dispatcher(self.sink)
        self.connection = ConnectionManager(
            self.dispatcher.dispatch,
            self.sink,
            tls_context=build_tls_context(self.settings),
            server_hostname=self.settings.server_hostname,
        )
        self.pairing = FriendPairing(store, self.connection, self.sink)
        self.pairing.register(self.dispatcher)

        self.dispatcher.register(MessageKind.AUTH_SUCCESS, self.on_auth_success)
        self.dispatcher.register(MessageKind.AUTH_FAIL, self.on_auth_fail)
        self.dispatcher.register(MessageKind.SET_SALT, self.on_set_salt)
        self.dispatcher.register(MessageKind.USER_NOT_FOUND, self.on_user_not_found)
        self.dispatcher.register(MessageKind.CHAT_MESSAGE, self.on_chat_message)

    # --- lifecycle ---

    def connect(self, host: Optional[str] = None, port: Optional[int] = None) -> None:
        """Raises TransportError if the relay cannot be reached."""
        self.connection.connect(host or self.settings.relay_host, port or self.settings.relay_port)

    def disconnect(self) -> None:
        self.connection.disconnect()

    # --- outbound actions ---

    def find_user(self, username: str) -> bool:
        """Asks the relay to resolve a user; a hit starts a pairing."""
        return self.connection.send(MessageKind.GET_USER.build(username=username))

    def accept(self, peer_id: str) -> bool:
        return self.pairing.accept(peer_id)

    def decline(self, peer_id: str) -> bool:
        return self.pairing.decline(peer_id)

    def send_chat(self, peer_id: str, text: str) -> bool:
        """Encrypts text under the pairing secret with peer_id and sends it."""
        if self.user is None:
            logger.warning("Not authenticated, cannot send chat")
            return False
        secret = self.store.get_shared_secret(peer_id)
        if secret is None:
            logger.warning("No shared secret with %s (%s)", peer_id, self.pairing.state(peer_id).value)
            return False
        key = dh.derive_aes_key(secret.secret)
        blob = aes.encrypt(key, text.encode("utf-8"), _chat_aad(self.user.id, peer_id))
        message = MessageKind.CHAT_MESSAGE.build(
            sender=self.user.id, recipient=peer_id, message=b64e(blob)
        )
        return self.connection.send(message)

    # --- relay events ---

    def on_auth_success(self, message: Message) -> None:
        self.user = peer_from_fields(message.fields)
        logger.info("Authenticated as %s (%s)", self.user.display_name, self.user.id)
        self.sink.notify("auth_success", {"user_id": self.user.id, "display_name": self.user.display_name})

    def on_auth_fail(self, message: Message) -> None:
        self.sink.notify("auth_failed", {})

    def on_set_salt(self, message: Message) -> None:
        self.sink.notify("salt_received", {"salt": message.fields["salt"]})

    def on_user_not_found(self, message: Message) -> None:
        self.sink.notify("user_not_found", {})

    def on_chat_message(self, message: Message) -> None:
        sender, recipient = message.fields["sender"], message.fields["recipient"]
        if self.user is not None and recipient != self.user.id:
            logger.warning("Chat message for %s delivered to %s, dropping", recipient, self.user.id)
            return
        secret = self.store.get_shared_secret(sender)
        if secret is None:
            logger.warning("Chat message from %s without a shared secret, dropping", sender)
            return
        try:
            blob = b64d(message.fields["message"])
            plaintext = aes.decrypt(dh.derive_aes_key(secret.secret), blob, _chat_aad(sender, recipient))
        except ValueError as e:
            logger.warning("Undecryptable chat message from %s: %s", sender, e)
            return
        self.sink.notify("chat_message", {
            "peer_id": sender,
            "text": plaintext.decode("utf-8", errors="replace"),
            "ts": now_ms(),
        })


# --- console front end ---

HELP = """Commands:
  /find <username>        resolve a user and send a friend request
  /accept <peer_id>       accept a pending friend request
  /decline <peer_id>      drop a pending friend request
  /state <peer_id>        show pairing state
  /msg <peer_id> <text>   send an encrypted chat message
  /exit                   disconnect and quit"""


def print_events(sink: QueueNotificationSink, stop: threading.Event) -> None:
    while not stop.is_set():
        event = sink.get(timeout=0.2)
        if event is not None:
            kind, payload = event
            print(f"\n[{kind}] {payload}")


def run_command(client: RelayClient, line: str) -> bool:
    """Executes one console command. Returns False when the user wants to quit."""
    parts = line.strip().split(" ", 2)
    cmd, args = parts[0], parts[1:]
    if cmd == "/exit":
        return False
    if cmd == "/find" and args:
        client.find_user(args[0])
    elif cmd == "/accept" and args:
        client.accept(args[0])
    elif cmd == "/decline" and args:
        client.decline(args[0])
    elif cmd == "/state" and args:
        print(client.pairing.state(args[0]).value)
    elif cmd == "/msg" and len(args) == 2:
        if not client.send_chat(args[0], args[1]):
            print("Message not sent.")
    else:
        print(HELP)
    return True


def build_store(settings: Settings) -> PairingStore:
    if settings.use_mysql:
        return MySQLPairingStore(settings)
    logger.warning("MYSQL_USER/MYSQL_DATABASE not set, pairing state will not survive restart")
    return MemoryPairingStore()


def main(argv=None) -> int:
    settings = load_settings()
    ap = argparse.ArgumentParser(description="Relay chat client")
    ap.add_argument("--host", default=settings.relay_host, help="Relay host address")
    ap.add_argument("--port", type=int, default=settings.relay_port, help="Relay port")
    args = ap.parse_args(argv)

    logging.basicConfig(
        level=getattr(logging, settings.log_level, logging.INFO),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    )

    sink = QueueNotificationSink()
    client = RelayClient(build_store(settings), sink, settings)
    try:
        client.connect(args.host, args.port)
    except TransportError as e:
        print(f"[!] {e}")
        return 1

    stop = threading.Event()
    printer = threading.Thread(target=print_events, args=(sink, stop), daemon=True)
    printer.start()
    print(HELP)
    try:
        while client.connection.connected:
            if not run_command(client, input("> ")):
                break
    except (EOFError, KeyboardInterrupt):
        pass
    finally:
        client.disconnect()
        stop.set()
        printer.join()
        print("Connection closed. Goodbye.")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
