"""Routes decoded messages to the handler registered for their kind."""

import logging
from typing import Callable, Dict, Optional

from relaychat.common.errors import UnhandledKind
from relaychat.common.protocol import Message, MessageKind
from relaychat.notify import NotificationSink

logger = logging.getLogger(__name__)

Handler = Callable[[Message], object]


class Dispatcher:
    """
    Kind -> handler table. dispatch() never raises: unknown kinds are
    dropped and handler failures are logged and reported.
    """

    def __init__(self, sink: Optional[NotificationSink] = None):
        self.sink = sink
        self.handlers: Dict[str, Handler] = {}

    def register(self, kind: MessageKind, handler: Handler) -> None:
        if kind.tag in self.handlers:
            logger.warning("Replacing handler for %s", kind.tag)
        self.handlers[kind.tag] = handler

    def dispatch(self, message: Message) -> bool:
        """Returns True if a handler ran to completion."""
        handler = self.handlers.get(message.kind)
        if handler is None:
            logger.warning("%s", UnhandledKind(f"no handler for {message.kind}, dropping"))
            return False
        try:
            handler(message)
            return True
        except Exception as e:
            logger.exception("Handler for %s failed", message.kind)
            if self.sink is not None:
                self.sink.notify("handler_error", {"kind": message.kind, "error": str(e)})
            return False
