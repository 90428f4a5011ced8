"""Conversation identifiers.

A conversation is either a community (many members) or a direct thread
between exactly two users. Room ids and stored message rows both use the
canonical string form:

    community:<communityId>
    dm:<lowerUserId>:<higherUserId>

The direct form sorts the two ids, so both participants derive the same
thread id.
"""
import re
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Tuple

from .errors import ValidationError

# Ids never contain ":" so the canonical form splits unambiguously.
ID_PATTERN = re.compile(r"^[A-Za-z0-9_.@-]{1,128}$")

COMMUNITY_PREFIX = "community"
DIRECT_PREFIX = "dm"


class ConversationKind(str, Enum):
    COMMUNITY = "community"
    DIRECT = "direct"


def validate_id(value: Optional[str], field: str = "id") -> str:
    """Return *value* if it is a well-formed user/community id."""
    if not isinstance(value, str) or not ID_PATTERN.match(value):
        raise ValidationError(f"Invalid {field}")
    return value


def direct_thread_id(user_a: str, user_b: str) -> str:
    """Order-independent id of the direct thread between two users."""
    validate_id(user_a, "userId")
    validate_id(user_b, "userId")
    if user_a == user_b:
        raise ValidationError("Cannot open a direct thread with yourself")
    low, high = sorted((user_a, user_b))
    return f"{DIRECT_PREFIX}:{low}:{high}"


@dataclass(frozen=True)
class ConversationRef:
    """Parsed conversation reference."""

    kind: ConversationKind
    id: str
    community_id: Optional[str] = None
    participants: Tuple[str, ...] = ()

    @classmethod
    def community(cls, community_id: str) -> "ConversationRef":
        validate_id(community_id, "communityId")
        return cls(
            kind=ConversationKind.COMMUNITY,
            id=f"{COMMUNITY_PREFIX}:{community_id}",
            community_id=community_id,
        )

    @classmethod
    def direct(cls, user_a: str, user_b: str) -> "ConversationRef":
        thread_id = direct_thread_id(user_a, user_b)
        _, low, high = thread_id.split(":")
        return cls(kind=ConversationKind.DIRECT, id=thread_id, participants=(low, high))

    @classmethod
    def parse(cls, conversation_id: str) -> "ConversationRef":
        """Parse the canonical string form back into a reference."""
        if not isinstance(conversation_id, str):
            raise ValidationError("Invalid conversationId")
        parts = conversation_id.split(":")
        if len(parts) == 2 and parts[0] == COMMUNITY_PREFIX:
            return cls.community(parts[1])
        if len(parts) == 3 and parts[0] == DIRECT_PREFIX:
            ref = cls.direct(parts[1], parts[2])
            if ref.id != conversation_id:
                raise ValidationError("Invalid conversationId")
            return ref
        raise ValidationError("Invalid conversationId")

    @classmethod
    def resolve(
        cls,
        user_id: str,
        *,
        conversation_id: Optional[str] = None,
        community_id: Optional[str] = None,
        peer_id: Optional[str] = None,
    ) -> "ConversationRef":
        """Build a reference from whichever identifier a client supplied."""
        if conversation_id:
            return cls.parse(conversation_id)
        if community_id:
            return cls.community(community_id)
        if peer_id:
            return cls.direct(user_id, peer_id)
        raise ValidationError("conversationId, communityId or peerId is required")

    @property
    def is_direct(self) -> bool:
        return self.kind == ConversationKind.DIRECT

    def includes(self, user_id: str) -> bool:
        """True if *user_id* is a participant of this direct thread."""
        return user_id in self.participants

    def peer_of(self, user_id: str) -> str:
        """The other participant of a direct thread."""
        if not self.is_direct or user_id not in self.participants:
            raise ValidationError("Not a participant of this thread")
        low, high = self.participants
        return high if user_id == low else low
