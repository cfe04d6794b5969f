from __future__ import annotations

import uuid
from collections import OrderedDict, deque

from chat_memory.memory.types import ConversationTurn, Role
from chat_memory.utils.time_utils import utc_now


class ConversationLog:
    """In-process owner of conversation turns, one bounded deque per conversation.

    At most ``max_conversations`` conversations are kept; appending to a new
    one beyond that drops the least recently active conversation.
    """

    def __init__(
        self, max_turns_per_conversation: int = 200, max_conversations: int = 1000
    ) -> None:
        self._max_turns = max(1, max_turns_per_conversation)
        self.max_conversations = max(1, max_conversations)
        self._turns: OrderedDict[str, deque[ConversationTurn]] = OrderedDict()
        self._next_seq: dict[str, int] = {}

    def append(
        self,
        conversation_id: str,
        role: Role,
        content: str,
        *,
        truncated: bool = False,
    ) -> ConversationTurn:
        """Create the next turn of a conversation and record it."""

        seq = self._next_seq.get(conversation_id, 1)
        self._next_seq[conversation_id] = seq + 1
        turn = ConversationTurn(
            turn_id=uuid.uuid4().hex,
            conversation_id=conversation_id,
            role=role,
            content=content,
            timestamp=utc_now(),
            seq=seq,
            truncated=truncated,
        )
        turns = self._turns.get(conversation_id)
        if turns is None:
            turns = self._turns[conversation_id] = deque(maxlen=self._max_turns)
        else:
            self._turns.move_to_end(conversation_id)
        turns.append(turn)
        self._evict_idle()
        return turn

    def turns(self, conversation_id: str) -> list[ConversationTurn]:
        return list(self._turns.get(conversation_id, ()))

    def clear(self, conversation_id: str) -> int:
        removed = self._turns.pop(conversation_id, None)
        self._next_seq.pop(conversation_id, None)
        return len(removed) if removed else 0

    def conversation_ids(self) -> list[str]:
        return list(self._turns)

    def _evict_idle(self) -> None:
        while len(self._turns) > self.max_conversations:
            oldest, _ = self._turns.popitem(last=False)
            self._next_seq.pop(oldest, None)
