"""Wire messages: the kind catalog, the Message model and the line codec."""

from enum import Enum
from types import MappingProxyType
from typing import Dict, FrozenSet, Mapping

from pydantic import BaseModel, ConfigDict, ValidationError, field_serializer, field_validator

from relaychat.common.errors import SchemaError


class Message(BaseModel):
    """
    One wire message. Serialized as a single JSON line:
    {"kind": "<tag>", "fields": {"<name>": "<value>", ...}}
    """
    model_config = ConfigDict(frozen=True, extra="forbid", strict=True)

    kind: str
    fields: Dict[str, str]

    @field_validator("fields")
    @classmethod
    def freeze_fields(cls, fields: Dict[str, str]) -> Mapping[str, str]:
        # frozen only stops reassignment; the field set must not change either.
        return MappingProxyType(dict(fields))

    @field_serializer("fields")
    def dump_fields(self, fields: Mapping[str, str]) -> Dict[str, str]:
        return dict(fields)


class MessageKind(Enum):
    """
    Static catalog of message kinds: tag -> required field names.
    A tag is never reused for a different field set.
    """

    # --- Session (relay -> client) ---
    AUTH_SUCCESS = ("AuthSuccess", ("userId", "userName", "email", "phone"))
    AUTH_FAIL = ("AuthFail", ())
    SET_SALT = ("SetSalt", ("salt",))

    # --- User lookup ---
    GET_USER = ("GetUser", ("username",))
    USER_RESOLVED = ("UserResolved", ("userId", "userName", "email", "phone"))
    USER_NOT_FOUND = ("UserNotFound", ())

    # --- Friend pairing (userId is always the other party) ---
    FRIEND_REQUEST = ("FriendRequest", ("userId", "publicKey"))
    FRIEND_REQUEST_INCOMING = (
        "FriendRequestIncoming",
        ("userId", "userName", "email", "phone", "publicKey"),
    )
    REQUEST_ACKNOWLEDGED = ("RequestAcknowledged", ("userId",))
    HANDSHAKE_COMPLETE = ("HandshakeComplete", ("userId", "publicKey"))

    # --- Chat ---
    CHAT_MESSAGE = ("ChatMessage", ("sender", "recipient", "message"))

    def __init__(self, tag: str, field_names: tuple):
        self.tag = tag
        self.field_names: FrozenSet[str] = frozenset(field_names)

    @classmethod
    def from_tag(cls, tag: str) -> "MessageKind":
        try:
            return _BY_TAG[tag]
        except KeyError:
            raise SchemaError(f"unknown message kind: {tag!r}") from None

    def template(self) -> Message:
        """Returns an empty-valued message of this kind."""
        return Message(kind=self.tag, fields={name: "" for name in self.field_names})

    def build(self, **fields: str) -> Message:
        """Builds a message of this kind, checking the field set."""
        try:
            message = Message(kind=self.tag, fields=fields)
        except ValidationError as e:
            raise SchemaError(f"invalid {self.tag} fields: {e.errors()}") from e
        validate(message)
        return message


_BY_TAG = {kind.tag: kind for kind in MessageKind}


def validate(message: Message) -> MessageKind:
    """Checks that the message's field set exactly matches its kind's schema."""
    kind = MessageKind.from_tag(message.kind)
    present = set(message.fields)
    if present != kind.field_names:
        missing = sorted(kind.field_names - present)
        extra = sorted(present - kind.field_names)
        raise SchemaError(
            f"{kind.tag} field mismatch (missing={missing}, unexpected={extra})"
        )
    return kind


def encode(message: Message) -> str:
    """Serializes a message to one line of JSON (no trailing newline)."""
    validate(message)
    return message.model_dump_json()


def decode(line: str) -> Message:
    """
    Parses one wire line into a Message.
    Raises SchemaError on malformed JSON, unknown kinds or a field set
    that does not match the schema.
    """
    try:
        message = Message.model_validate_json(line)
    except ValidationError as e:
        raise SchemaError(f"malformed line: {e.errors(include_url=False)}") from e
    validate(message)
    return message
