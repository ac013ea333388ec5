"""Persistent relay connection: lifecycle, serialized sends and the receive thread."""

import enum
import logging
import socket
import ssl
import threading
from typing import Callable, Optional

from relaychat.common.errors import SchemaError, TransportError
from relaychat.common.protocol import Message, decode, encode
from relaychat.notify import NotificationSink

logger = logging.getLogger(__name__)

ENC = "utf-8"


class ConnectionState(enum.Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    DISCONNECTING = "disconnecting"


class ConnectionManager:
    """
    Owns the stream to the relay. One receive thread reads newline-delimited
    messages and hands them to on_message one at a time; send() may be
    called from any thread.
    """

    def __init__(
        self,
        on_message: Callable[[Message], object],
        sink: Optional[NotificationSink] = None,
        tls_context: Optional[ssl.SSLContext] = None,
        server_hostname: Optional[str] = None,
    ):
        self.on_message = on_message
        self.sink = sink
        self.tls_context = tls_context
        self.server_hostname = server_hostname
        self.state = ConnectionState.DISCONNECTED
        self.sock: Optional[socket.socket] = None
        self.recv_thread: Optional[threading.Thread] = None
        self._reader = None
        self._state_lock = threading.Lock()  # guards state transitions
        self._send_lock = threading.Lock()   # one line on the wire at a time
        self._stop = threading.Event()

    @property
    def connected(self) -> bool:
        return self.state is ConnectionState.CONNECTED

    def connect(self, address: str, port: int) -> None:
        """
        Opens the stream and starts the receive thread.
        Raises TransportError if the connection cannot be set up.
        """
        with self._state_lock:
            if self.state is not ConnectionState.DISCONNECTED:
                raise TransportError(f"cannot connect while {self.state.value}")
            self.state = ConnectionState.CONNECTING

        sock = None
        try:
            sock = socket.create_connection((address, port))
            sock.setsockopt(socket.IPPROTO_TCP, socket.TCP_NODELAY, 1)
            if self.tls_context is not None:
                sock = self.tls_context.wrap_socket(
                    sock, server_hostname=self.server_hostname or address
                )
            reader = sock.makefile("rb")
        except (OSError, ValueError) as e:
            if sock is not None:
                sock.close()
            with self._state_lock:
                self.state = ConnectionState.DISCONNECTED
            logger.error("Could not connect to %s:%s: %s", address, port, e)
            raise TransportError(f"could not connect to {address}:{port}: {e}") from e

        self.sock = sock
        self._reader = reader
        self._stop.clear()
        self.recv_thread = threading.Thread(
            target=self._recv_loop, args=(sock, reader), name="relay-recv", daemon=True
        )
        with self._state_lock:
            self.state = ConnectionState.CONNECTED
        logger.info("Connected to %s:%s", address, port)
        self.recv_thread.start()

    def send(self, message: Message) -> bool:
        """Writes one message line. Returns False if it could not be sent."""
        try:
            data = (encode(message) + "\n").encode(ENC)
        except SchemaError as e:
            logger.error("Refusing to send invalid message: %s", e)
            return False
        with self._send_lock:
            sock = self.sock
            if sock is None or not self.connected:
                logger.warning("Not connected, dropping outbound %s", message.kind)
                return False
            try:
                sock.sendall(data)
            except OSError as e:
                logger.error("Send of %s failed: %s", message.kind, e)
                return False
        logger.debug("Sent %s", message.kind)
        return True

    def disconnect(self) -> None:
        """Stops the receive thread and closes the stream. Safe to call twice."""
        with self._state_lock:
            if self.state is not ConnectionState.CONNECTED:
                return
            self.state = ConnectionState.DISCONNECTING
        self._stop.set()

        sock = self.sock
        try:
            # Unblocks the pending readline() in the receive thread.
            sock.shutdown(socket.SHUT_RDWR)
        except OSError:
            pass

        thread = self.recv_thread
        if thread is not None and thread is not threading.current_thread():
            thread.join()

        self._close_stream()
        with self._state_lock:
            self.state = ConnectionState.DISCONNECTED
        logger.info("Disconnected from the relay")

    def _close_stream(self) -> None:
        with self._send_lock:
            reader, sock = self._reader, self.sock
            self._reader = None
            self.sock = None
        for resource in (reader, sock):
            if resource is None:
                continue
            try:
                resource.close()
            except OSError as e:
                logger.debug("Error while closing stream: %s", e)

    def _recv_loop(self, sock: socket.socket, reader) -> None:
        logger.debug("Receive thread started")
        error: Optional[BaseException] = None
        try:
            while not self._stop.is_set():
                raw = reader.readline()
                if not raw:
                    error = TransportError("relay closed the connection")
                    break
                self._handle_line(raw)
        except (OSError, ValueError) as e:
            # ValueError: read on a file object closed underneath us.
            error = e

        if self._stop.is_set():
            logger.debug("Receive thread stopping (requested)")
            return

        logger.error("Connection to relay lost: %s", error)
        with self._state_lock:
            owns_stream = self.state is ConnectionState.CONNECTED and self.sock is sock
            if owns_stream:
                self.state = ConnectionState.DISCONNECTING
        if owns_stream:
            self._close_stream()
            with self._state_lock:
                self.state = ConnectionState.DISCONNECTED
        if self.sink is not None:
            self.sink.notify("connection_lost", {"error": str(error)})

    def _handle_line(self, raw: bytes) -> None:
        try:
            line = raw.decode(ENC).rstrip("\r\n")
        except UnicodeDecodeError as e:
            logger.warning("Dropping non UTF-8 line: %s", e)
            return
        if not line.strip():
            return
        try:
            message = decode(line)
        except SchemaError as e:
            logger.warning("Dropping malformed line: %s", e)
            return
        logger.debug("Received %s", message.kind)
        try:
            self.on_message(message)
        except Exception:
            logger.exception("Unhandled error while processing %s", message.kind)
