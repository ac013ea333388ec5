import unittest

from relaychat.client import RelayClient, run_command
from relaychat.common.protocol import MessageKind
from relaychat.pairing import PairingState
from relaychat.storage.store import MemoryPairingStore, SharedSecret

from fakes import RecordingSender, RecordingSink


def auth_success(user_id, name):
    return MessageKind.AUTH_SUCCESS.build(userId=user_id, userName=name, email=f"{name}@example.org", phone="")


class RelayClientTests(unittest.TestCase):
    def make_client(self, user_id, name):
        sink = RecordingSink()
        client = RelayClient(MemoryPairingStore(), sink)
        outbox = RecordingSender()
        # Pairing and chat both write through the connection object.
        client.connection.send = outbox.send
        client.dispatcher.dispatch(auth_success(user_id, name))
        return client, sink, outbox

    def setUp(self):
        self.alice, self.alice_sink, self.alice_out = self.make_client("u1", "alice")
        self.bob, self.bob_sink, self.bob_out = self.make_client("u42", "bob")
        secret = SharedSecret("u42", b"\x07" * 256)
        self.alice.store.save_shared_secret(secret)
        self.bob.store.save_shared_secret(SharedSecret("u1", secret.secret))

    def test_auth_success_sets_local_user(self):
        self.assertEqual(self.alice.user.id, "u1")
        self.assertIn("auth_success", self.alice_sink.kinds())

    def test_session_events_reach_the_sink(self):
        self.alice.dispatcher.dispatch(MessageKind.AUTH_FAIL.build())
        self.alice.dispatcher.dispatch(MessageKind.SET_SALT.build(salt="c2FsdA=="))
        self.alice.dispatcher.dispatch(MessageKind.USER_NOT_FOUND.build())
        self.assertEqual(self.alice_sink.kinds()[-3:], ["auth_failed", "salt_received", "user_not_found"])
        self.assertEqual(self.alice_sink.events[-2][1], {"salt": "c2FsdA=="})

    def test_chat_is_encrypted_and_decrypted_with_pair_secret(self):
        self.assertTrue(self.alice.send_chat("u42", "hi bob"))
        wire = self.alice_out.sent[-1]
        self.assertEqual(wire.kind, "ChatMessage")
        self.assertNotIn("hi bob", wire.fields["message"])

        self.bob.dispatcher.dispatch(wire)
        kind, payload = self.bob_sink.events[-1]
        self.assertEqual(kind, "chat_message")
        self.assertEqual(payload["peer_id"], "u1")
        self.assertEqual(payload["text"], "hi bob")

    def test_chat_without_secret_is_refused(self):
        self.assertFalse(self.alice.send_chat("u99", "hello?"))
        self.assertEqual(self.alice_out.sent, [])

    def test_tampered_chat_is_dropped(self):
        self.alice.send_chat("u42", "hi bob")
        wire = self.alice_out.sent[-1]
        forged = MessageKind.CHAT_MESSAGE.build(
            sender="u1", recipient="u42", message=wire.fields["message"][:-4] + "AAAA")
        with self.assertLogs("relaychat.client", level="WARNING"):
            self.bob.dispatcher.dispatch(forged)
        self.assertNotIn("chat_message", self.bob_sink.kinds())

    def test_find_user_and_resolution_start_pairing(self):
        self.assertTrue(self.alice.find_user("carol"))
        self.assertEqual(self.alice_out.sent[-1].fields, {"username": "carol"})

        self.alice.dispatcher.dispatch(MessageKind.USER_RESOLVED.build(
            userId="u7", userName="carol", email="carol@example.org", phone=""))
        self.assertIs(self.alice.pairing.state("u7"), PairingState.KEY_SENT)
        self.assertEqual(self.alice_out.sent[-1].kind, "FriendRequest")

    def test_default_sink_logs_events(self):
        client = RelayClient(MemoryPairingStore())
        with self.assertLogs("relaychat.notify", level="INFO") as logs:
            client.dispatcher.dispatch(MessageKind.USER_NOT_FOUND.build())
        self.assertIn("user_not_found", logs.output[0])

    def test_console_commands(self):
        self.assertTrue(run_command(self.alice, "/msg u42 hello there"))
        self.assertEqual(self.alice_out.sent[-1].kind, "ChatMessage")
        self.assertFalse(run_command(self.alice, "/exit"))


if __name__ == "__main__":
    unittest.main()
