"""MySQL-backed pairing store (peers, key pairs, pending requests, secrets)."""

import logging
import sys
from typing import Optional

import pymysql

from relaychat.config import Settings, load_settings
from relaychat.storage.store import (
    IncomingKeyRequest,
    KeyPairRecord,
    PairingStore,
    PeerIdentity,
    SharedSecret,
)

logger = logging.getLogger(__name__)

SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS peers (
        id VARCHAR(64) PRIMARY KEY,
        display_name VARCHAR(255) NOT NULL,
        email VARCHAR(255) NOT NULL,
        phone VARCHAR(64) NOT NULL
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS key_pairs (
        peer_id VARCHAR(64) PRIMARY KEY,
        public_key TEXT NOT NULL,
        private_key TEXT NOT NULL,
        acknowledged BOOLEAN NOT NULL DEFAULT FALSE
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS incoming_requests (
        peer_id VARCHAR(64) PRIMARY KEY,
        public_key TEXT NOT NULL,
        FOREIGN KEY (peer_id) REFERENCES peers(id)
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS shared_secrets (
        peer_id VARCHAR(64) PRIMARY KEY,
        secret VARBINARY(512) NOT NULL
    );
    """,
)

UPSERT_PEER = (
    "INSERT INTO peers (id, display_name, email, phone) VALUES (%s, %s, %s, %s) "
    "ON DUPLICATE KEY UPDATE display_name = VALUES(display_name), "
    "email = VALUES(email), phone = VALUES(phone)"
)


def _close(conn) -> None:
    # A connection dropped mid-query is already closed by PyMySQL.
    try:
        conn.close()
    except pymysql.MySQLError as e:
        logger.debug("Closing MySQL connection failed: %s", e)


class MySQLPairingStore(PairingStore):
    """
    Opens one connection per operation. Every write runs in a single
    transaction and is rolled back on error, so a failed multi-row write
    (e.g. profile + pending key) leaves nothing behind.
    """

    def __init__(self, settings: Settings):
        self.settings = settings

    def get_db_connection(self):
        """Establishes a connection to the MySQL database."""
        return pymysql.connect(
            host=self.settings.mysql_host,
            user=self.settings.mysql_user,
            password=self.settings.mysql_password,
            database=self.settings.mysql_database,
            cursorclass=pymysql.cursors.DictCursor,
            autocommit=False,
        )

    def _write(self, what: str, statements, require_rows: bool = True) -> bool:
        try:
            conn = self.get_db_connection()
        except pymysql.MySQLError as e:
            logger.error("Error connecting to MySQL (%s): %s", what, e)
            return False
        try:
            with conn.cursor() as cursor:
                affected = 0
                for sql, args in statements:
                    affected += cursor.execute(sql, args)
            conn.commit()
            return affected > 0 or not require_rows
        except pymysql.MySQLError as e:
            logger.error("Error writing %s: %s", what, e)
            try:
                conn.rollback()
            except pymysql.MySQLError as rollback_error:
                logger.warning("Rollback of %s failed: %s", what, rollback_error)
            return False
        finally:
            _close(conn)

    def _fetch_one(self, what: str, sql: str, args) -> Optional[dict]:
        try:
            conn = self.get_db_connection()
        except pymysql.MySQLError as e:
            logger.error("Error connecting to MySQL (%s): %s", what, e)
            return None
        try:
            with conn.cursor() as cursor:
                cursor.execute(sql, args)
                return cursor.fetchone()
        except pymysql.MySQLError as e:
            logger.error("Error fetching %s: %s", what, e)
            return None
        finally:
            _close(conn)

    def init_db(self) -> bool:
        """Creates the pairing tables if they don't exist."""
        ok = self._write("schema", [(stmt, None) for stmt in SCHEMA], require_rows=False)
        if ok:
            logger.info("Database initialized: peers, key_pairs, incoming_requests, shared_secrets")
        return ok

    # --- peers ---

    def upsert_peer_identity(self, peer: PeerIdentity) -> bool:
        args = (peer.id, peer.display_name, peer.email, peer.phone)
        # An unchanged upsert reports 0 affected rows; that is still a success.
        return self._write("peer", [(UPSERT_PEER, args)], require_rows=False)

    def get_peer(self, peer_id: str) -> Optional[PeerIdentity]:
        row = self._fetch_one(
            "peer", "SELECT id, display_name, email, phone FROM peers WHERE id = %s", (peer_id,)
        )
        if row is None:
            return None
        return PeerIdentity(row["id"], row["display_name"], row["email"], row["phone"])

    # --- key pairs ---

    def save_key_pair(self, record: KeyPairRecord) -> bool:
        sql = (
            "INSERT INTO key_pairs (peer_id, public_key, private_key, acknowledged) "
            "VALUES (%s, %s, %s, %s)"
        )
        args = (record.peer_id, record.local_public_key, record.local_private_key, record.acknowledged)
        return self._write("key pair", [(sql, args)])

    def get_key_pair(self, peer_id: str) -> Optional[KeyPairRecord]:
        row = self._fetch_one(
            "key pair",
            "SELECT peer_id, public_key, private_key, acknowledged FROM key_pairs WHERE peer_id = %s",
            (peer_id,),
        )
        if row is None:
            return None
        return KeyPairRecord(row["peer_id"], row["public_key"], row["private_key"], bool(row["acknowledged"]))

    def mark_acknowledged(self, peer_id: str) -> bool:
        sql = "UPDATE key_pairs SET acknowledged = TRUE WHERE peer_id = %s"
        return self._write("acknowledgement", [(sql, (peer_id,))])

    # --- incoming requests ---

    def save_incoming_request(self, request: IncomingKeyRequest) -> bool:
        profile = request.peer_profile
        return self._write(
            "incoming request",
            [
                (UPSERT_PEER, (profile.id, profile.display_name, profile.email, profile.phone)),
                (
                    "INSERT INTO incoming_requests (peer_id, public_key) VALUES (%s, %s)",
                    (request.peer_id, request.peer_public_key),
                ),
            ],
        )

    def get_incoming_request(self, peer_id: str) -> Optional[IncomingKeyRequest]:
        row = self._fetch_one(
            "incoming request",
            "SELECT r.peer_id, r.public_key, p.display_name, p.email, p.phone "
            "FROM incoming_requests r JOIN peers p ON p.id = r.peer_id WHERE r.peer_id = %s",
            (peer_id,),
        )
        if row is None:
            return None
        profile = PeerIdentity(row["peer_id"], row["display_name"], row["email"], row["phone"])
        return IncomingKeyRequest(row["peer_id"], profile, row["public_key"])

    def discard_incoming_request(self, peer_id: str) -> bool:
        sql = "DELETE FROM incoming_requests WHERE peer_id = %s"
        return self._write("request removal", [(sql, (peer_id,))], require_rows=False)

    # --- shared secrets ---

    def save_shared_secret(self, secret: SharedSecret) -> bool:
        # Plain INSERT: a second secret for the same peer violates the primary key.
        sql = "INSERT INTO shared_secrets (peer_id, secret) VALUES (%s, %s)"
        return self._write("shared secret", [(sql, (secret.peer_id, secret.secret))])

    def get_shared_secret(self, peer_id: str) -> Optional[SharedSecret]:
        row = self._fetch_one(
            "shared secret", "SELECT peer_id, secret FROM shared_secrets WHERE peer_id = %s", (peer_id,)
        )
        if row is None:
            return None
        return SharedSecret(row["peer_id"], bytes(row["secret"]))


# This makes the --init flag work
if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)
    if len(sys.argv) > 1 and sys.argv[1] == '--init':
        MySQLPairingStore(load_settings()).init_db()
    else:
        print("This script is meant to be run with --init to set up the database.")
        print("Or, it can be imported as a module.")
