import queue
import socket
import threading
import unittest

from relaychat.common.errors import TransportError
from relaychat.common.protocol import MessageKind, decode, encode
from relaychat.net.connection import ConnectionManager, ConnectionState

from fakes import RecordingSink

TIMEOUT = 5.0


class FakeRelay:
    """Single-connection loopback server driven by the test."""

    def __init__(self):
        self.server = socket.create_server(("127.0.0.1", 0))
        self.port = self.server.getsockname()[1]
        self.conn = None
        self.accepted = threading.Event()
        self.lines = queue.Queue()
        threading.Thread(target=self._serve, daemon=True).start()

    def _serve(self):
        try:
            self.conn, _ = self.server.accept()
            self.accepted.set()
            with self.conn.makefile("rb") as reader:
                for raw in reader:
                    self.lines.put(raw.decode("utf-8").rstrip("\n"))
        except OSError:
            pass

    def push(self, text):
        self.accepted.wait(TIMEOUT)
        self.conn.sendall(text.encode("utf-8") + b"\n")

    def drop(self):
        self.accepted.wait(TIMEOUT)
        self.conn.shutdown(socket.SHUT_RDWR)
        self.conn.close()

    def close(self):
        if self.conn is not None:
            try:
                self.conn.close()
            except OSError:
                pass
        self.server.close()


class ConnectionManagerTests(unittest.TestCase):
    def setUp(self):
        self.received = queue.Queue()
        self.sink = RecordingSink()
        self.manager = ConnectionManager(self.received.put, self.sink)
        self.relay = FakeRelay()

    def tearDown(self):
        self.manager.disconnect()
        self.relay.close()

    def test_disconnect_without_connection_is_noop(self):
        manager = ConnectionManager(lambda message: None)
        manager.disconnect()
        manager.disconnect()
        self.assertIs(manager.state, ConnectionState.DISCONNECTED)

    def test_connect_failure_raises_and_stays_disconnected(self):
        port = self.relay.port
        self.relay.close()
        with self.assertRaises(TransportError):
            self.manager.connect("127.0.0.1", port)
        self.assertIs(self.manager.state, ConnectionState.DISCONNECTED)
        self.assertIsNone(self.manager.recv_thread)

    def test_connect_twice_is_rejected(self):
        self.manager.connect("127.0.0.1", self.relay.port)
        with self.assertRaises(TransportError):
            self.manager.connect("127.0.0.1", self.relay.port)
        self.assertTrue(self.manager.connected)

    def test_malformed_line_is_dropped_and_loop_continues(self):
        self.manager.connect("127.0.0.1", self.relay.port)
        self.relay.push('{"kind":"FriendRequest","fields":{"userId":"u1"}}')
        self.relay.push("garbage")
        good = MessageKind.REQUEST_ACKNOWLEDGED.build(userId="u1")
        self.relay.push(encode(good))

        self.assertEqual(self.received.get(timeout=TIMEOUT), good)
        self.assertTrue(self.received.empty())
        self.assertTrue(self.manager.connected)

    def test_send_writes_one_line_per_message(self):
        self.manager.connect("127.0.0.1", self.relay.port)
        messages = [MessageKind.GET_USER.build(username=f"user{i}") for i in range(20)]
        threads = [threading.Thread(target=self.manager.send, args=(m,)) for m in messages]
        for t in threads:
            t.start()
        for t in threads:
            t.join(TIMEOUT)

        got = [decode(self.relay.lines.get(timeout=TIMEOUT)) for _ in messages]
        self.assertCountEqual(got, messages)

    def test_send_when_disconnected_returns_false(self):
        self.assertFalse(self.manager.send(MessageKind.AUTH_FAIL.build()))

    def test_disconnect_stops_receive_thread_without_error_report(self):
        self.manager.connect("127.0.0.1", self.relay.port)
        thread = self.manager.recv_thread
        self.manager.disconnect()
        self.assertFalse(thread.is_alive())
        self.assertIs(self.manager.state, ConnectionState.DISCONNECTED)
        self.assertNotIn("connection_lost", self.sink.kinds())
        self.manager.disconnect()

    def test_unexpected_close_is_reported(self):
        self.manager.connect("127.0.0.1", self.relay.port)
        with self.assertLogs("relaychat.net.connection", level="ERROR"):
            self.relay.drop()
            self.assertTrue(self.sink.wait_for("connection_lost", TIMEOUT))
            self.manager.recv_thread.join(TIMEOUT)
        self.assertIs(self.manager.state, ConnectionState.DISCONNECTED)
        self.assertFalse(self.manager.send(MessageKind.AUTH_FAIL.build()))

    def test_reconnect_after_disconnect(self):
        self.manager.connect("127.0.0.1", self.relay.port)
        self.manager.disconnect()

        second = FakeRelay()
        try:
            self.manager.connect("127.0.0.1", second.port)
            message = MessageKind.SET_SALT.build(salt="s")
            second.push(encode(message))
            self.assertEqual(self.received.get(timeout=TIMEOUT), message)
        finally:
            self.manager.disconnect()
            second.close()


if __name__ == "__main__":
    unittest.main()
