import unittest
from unittest import mock

import pymysql

from relaychat.config import Settings
from relaychat.storage.db import MySQLPairingStore
from relaychat.storage.store import (
    IncomingKeyRequest,
    KeyPairRecord,
    MemoryPairingStore,
    PeerIdentity,
    SharedSecret,
)

BOB = PeerIdentity("u42", "Bob", "bob@example.org", "+100")


class MemoryStoreTests(unittest.TestCase):
    def setUp(self):
        self.store = MemoryPairingStore()

    def test_acknowledge_requires_record(self):
        self.assertFalse(self.store.mark_acknowledged("u42"))
        self.store.save_key_pair(KeyPairRecord("u42", "pub", "priv"))
        self.assertTrue(self.store.mark_acknowledged("u42"))
        self.assertTrue(self.store.get_key_pair("u42").acknowledged)

    def test_incoming_request_also_records_identity(self):
        self.assertTrue(self.store.save_incoming_request(IncomingKeyRequest("u42", BOB, "pub")))
        self.assertEqual(self.store.get_peer("u42"), BOB)
        self.assertTrue(self.store.discard_incoming_request("u42"))
        self.assertIsNone(self.store.get_incoming_request("u42"))

    def test_shared_secret_is_never_overwritten(self):
        self.assertTrue(self.store.save_shared_secret(SharedSecret("u42", b"one")))
        self.assertFalse(self.store.save_shared_secret(SharedSecret("u42", b"two")))
        self.assertEqual(self.store.get_shared_secret("u42").secret, b"one")


class MySQLStoreTests(unittest.TestCase):
    def setUp(self):
        self.conn = mock.MagicMock()
        self.cursor = self.conn.cursor.return_value.__enter__.return_value
        patcher = mock.patch("relaychat.storage.db.pymysql.connect", return_value=self.conn)
        self.connect = patcher.start()
        self.addCleanup(patcher.stop)
        self.store = MySQLPairingStore(Settings(mysql_user="chat", mysql_database="chat"))

    def test_incoming_request_is_one_transaction(self):
        self.cursor.execute.return_value = 1
        self.assertTrue(self.store.save_incoming_request(IncomingKeyRequest("u42", BOB, "pub")))
        self.assertEqual(self.cursor.execute.call_count, 2)
        self.conn.commit.assert_called_once()
        self.conn.close.assert_called_once()

    def test_failed_write_rolls_back_and_reports_false(self):
        self.cursor.execute.side_effect = [1, pymysql.err.IntegrityError(1062, "Duplicate entry")]
        with self.assertLogs("relaychat.storage.db", level="ERROR"):
            ok = self.store.save_incoming_request(IncomingKeyRequest("u42", BOB, "pub"))
        self.assertFalse(ok)
        self.conn.rollback.assert_called_once()
        self.conn.commit.assert_not_called()

    def test_dropped_connection_never_raises(self):
        # PyMySQL closes the connection itself when it drops mid-query.
        self.cursor.execute.side_effect = pymysql.err.OperationalError(2013, "Lost connection")
        self.conn.rollback.side_effect = pymysql.err.InterfaceError(0, "")
        self.conn.close.side_effect = pymysql.err.InterfaceError(0, "")
        with self.assertLogs("relaychat.storage.db", level="ERROR"):
            self.assertFalse(self.store.save_shared_secret(SharedSecret("u42", b"s")))
            self.assertIsNone(self.store.get_shared_secret("u42"))
        self.conn.rollback.assert_called_once()
        self.assertEqual(self.conn.close.call_count, 2)

    def test_connection_failure_reports_false(self):
        self.connect.side_effect = pymysql.err.OperationalError(2003, "Can't connect")
        with self.assertLogs("relaychat.storage.db", level="ERROR"):
            self.assertFalse(self.store.save_shared_secret(SharedSecret("u42", b"s")))
            self.assertIsNone(self.store.get_shared_secret("u42"))

    def test_unchanged_upsert_is_success(self):
        self.cursor.execute.return_value = 0
        self.assertTrue(self.store.upsert_peer_identity(BOB))

    def test_acknowledge_unknown_peer_is_failure(self):
        self.cursor.execute.return_value = 0
        self.assertFalse(self.store.mark_acknowledged("nobody"))

    def test_rows_map_to_records(self):
        self.cursor.fetchone.return_value = {
            "peer_id": "u42", "public_key": "pub", "private_key": "priv", "acknowledged": 1,
        }
        self.assertEqual(self.store.get_key_pair("u42"), KeyPairRecord("u42", "pub", "priv", True))

        self.cursor.fetchone.return_value = None
        self.assertIsNone(self.store.get_peer("u42"))


if __name__ == "__main__":
    unittest.main()
