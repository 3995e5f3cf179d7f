"""Self-learning: spot corrections and preferences in chat, persist them.

``PatternLearningDetector`` runs synchronously with no model dependency. It
scans user messages with compiled pattern tables, classifies a hit into one
of the five memory types and picks a scope from cue phrases. Drafts are not
persisted until ``LearningPipeline.persist`` stores and indexes them.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Protocol, Sequence

from loguru import logger

from .exceptions import NotFoundError, ProviderError, StorageError
from .memory_store import MemoryStore
from .models import IndexStatus, Memory, MemoryScope, MemoryType, Message, Role
from .storage.vector_index import VectorIndex, VectorMeta

# Prior assistant text kept as context for a correction
_CONTEXT_CHARS = 200

AUTO_LEARNED_TAG = "auto-learned"


@dataclass(frozen=True, slots=True)
class DraftMemory:
    """A candidate memory that has not been stored yet."""

    scope: MemoryScope
    memory_type: MemoryType
    content: str
    agent_id: str | None = None
    topic_id: str | None = None
    context: str | None = None
    tags: tuple[str, ...] = ()

    def to_memory(self) -> Memory:
        return Memory(
            scope=self.scope,
            memory_type=self.memory_type,
            agent_id=self.agent_id,
            topic_id=self.topic_id,
            content=self.content,
            context=self.context,
            tags=list(self.tags),
        )


class MemoryClassifier(Protocol):
    """Message in, draft memories out."""

    def scan(
        self, message: Message, prior_message: Message | None = None
    ) -> list[DraftMemory]: ...


@dataclass(frozen=True, slots=True)
class _PatternEntry:
    """A single compiled classification pattern."""

    pattern: re.Pattern[str]
    memory_type: MemoryType


@dataclass(frozen=True, slots=True)
class _ScopeCue:
    pattern: re.Pattern[str]
    scope: MemoryScope


def _build_patterns() -> tuple[_PatternEntry, ...]:
    """Compile the classification tables; earlier entries win."""
    raw: list[tuple[str, MemoryType]] = [
        # Corrections of what the assistant just said
        (r"^(?:no|nope|wrong)\s*,", MemoryType.CORRECTION),
        (r"\bno,? that'?s\b", MemoryType.CORRECTION),
        (r"\bthat'?s (?:wrong|not (?:right|correct|what))", MemoryType.CORRECTION),
        (r"(?:^|\s)actually[, ]", MemoryType.CORRECTION),
        (r"\b(?:incorrect|not quite)\b", MemoryType.CORRECTION),
        (r"\byou'?re wrong\b", MemoryType.CORRECTION),
        (r"\b(?:what )?i meant\b", MemoryType.CORRECTION),
        (r"\b(?:let me clarify|to clarify)\b", MemoryType.CORRECTION),
        (r"(?:^|\s)correction:", MemoryType.CORRECTION),
        (r"\bi should have said\b", MemoryType.CORRECTION),
        # Hard rules
        (r"(?:^|\s)never\s", MemoryType.CONSTRAINT),
        (r"\b(?:do not|don'?t) ever\b", MemoryType.CONSTRAINT),
        (r"\byou (?:must|must not|mustn'?t|cannot|can'?t)\b", MemoryType.CONSTRAINT),
        # Preferences
        (r"(?:^|\s)always\s", MemoryType.PREFERENCE),
        (r"\bi (?:prefer|like|love|hate|don'?t like|dislike)\b", MemoryType.PREFERENCE),
        (r"\bi'?d rather\b", MemoryType.PREFERENCE),
        # Procedures
        (r"\bmake sure\b", MemoryType.WORKFLOW),
        (r"\bwhen(?:ever)? you\b", MemoryType.WORKFLOW),
        (r"\b(?:first|before you)\b.+\b(?:then|after that)\b", MemoryType.WORKFLOW),
        # Facts to keep
        (r"\b(?:please )?remember(?: that)?\b", MemoryType.FACT),
        (r"\bdon'?t forget\b", MemoryType.FACT),
        (r"\b(?:fyi|for the record|note that)\b", MemoryType.FACT),
    ]
    return tuple(
        _PatternEntry(pattern=re.compile(p, re.IGNORECASE), memory_type=t)
        for p, t in raw
    )


def _build_scope_cues() -> tuple[_ScopeCue, ...]:
    raw: list[tuple[str, MemoryScope]] = [
        (r"\b(?:in|for|on) this (?:project|topic|thread|conversation|repo)\b", MemoryScope.TOPIC),
        (r"\b(?:all|every|any) (?:agents?|assistants?)\b", MemoryScope.GLOBAL),
        (r"\b(?:everywhere|globally)\b", MemoryScope.GLOBAL),
        (r"\babout me\b", MemoryScope.PERSONAL),
        (r"\bmy (?:name|timezone|time zone|birthday|pronouns|location|job)\b", MemoryScope.PERSONAL),
        (r"\bi (?:am|live|work)\b|\bi'm\b", MemoryScope.PERSONAL),
    ]
    return tuple(
        _ScopeCue(pattern=re.compile(p, re.IGNORECASE), scope=s) for p, s in raw
    )


_PATTERNS: tuple[_PatternEntry, ...] = _build_patterns()
_SCOPE_CUES: tuple[_ScopeCue, ...] = _build_scope_cues()


@dataclass
class PatternLearningDetector:
    """Pattern-table implementation of :class:`MemoryClassifier`.

    At most one draft per message: the first matching pattern decides the
    type. Scope defaults to the speaking agent when no cue matches.
    """

    _patterns: Sequence[_PatternEntry] = field(
        default_factory=lambda: _PATTERNS,
        repr=False,
    )
    _scope_cues: Sequence[_ScopeCue] = field(
        default_factory=lambda: _SCOPE_CUES,
        repr=False,
    )

    def scan(
        self, message: Message, prior_message: Message | None = None
    ) -> list[DraftMemory]:
        """Classify a user message into at most one draft memory.

        Args:
            message: The new message
            prior_message: The message before it, usually the assistant's

        Returns:
            A list with zero or one DraftMemory
        """
        if message.role != Role.USER:
            return []
        text = " ".join(message.content.split())
        if not text:
            return []

        memory_type = self.classify(text)
        if memory_type is None:
            return []

        scope = self.scope_for(text)
        context = None
        if (
            memory_type == MemoryType.CORRECTION
            and prior_message is not None
            and prior_message.role == Role.ASSISTANT
        ):
            context = prior_message.content[:_CONTEXT_CHARS]

        draft = DraftMemory(
            scope=scope,
            memory_type=memory_type,
            content=text,
            agent_id=message.agent_id if scope in (MemoryScope.AGENT, MemoryScope.TOPIC) else None,
            topic_id=message.topic_id if scope == MemoryScope.TOPIC else None,
            context=context,
            tags=(memory_type.value, AUTO_LEARNED_TAG),
        )
        logger.debug(
            f"Learning signal in message {message.id}: "
            f"{memory_type.value}/{scope.value}"
        )
        return [draft]

    def classify(self, text: str) -> MemoryType | None:
        for entry in self._patterns:
            if entry.pattern.search(text):
                return entry.memory_type
        return None

    def scope_for(self, text: str) -> MemoryScope:
        for cue in self._scope_cues:
            if cue.pattern.search(text):
                return cue.scope
        return MemoryScope.AGENT

    @property
    def pattern_count(self) -> int:
        return len(self._patterns)


class LearningPipeline:
    """Stores memories and makes them searchable.

    Creation and indexing form one logical unit. When indexing fails after
    the record exists, the memory stays ``pending`` and is retried by
    :meth:`reconcile_pending`; it is never dropped.

    A delete may land while an embedding is in flight. The finished vector is
    then discarded, so a deleted or inactive memory never has a vector.
    """

    def __init__(self, memory_store: MemoryStore, vector_index: VectorIndex):
        self._memories = memory_store
        self._vectors = vector_index

    async def persist(self, draft: DraftMemory) -> Memory:
        """Store a detected draft and index it."""
        return await self.store_and_index(draft.to_memory())

    async def store_and_index(self, memory: Memory) -> Memory:
        """Create ``memory`` then embed and upsert it.

        Returns:
            The stored record as of the end of indexing. If the memory was
            deleted meanwhile, the last record read before the delete.

        Raises:
            ValidationError: if the memory is rejected; nothing is written
        """
        memory_id = await self._memories.create(memory)
        stored = await self._memories.get(memory_id)
        await self.index(stored)
        return await self._current(memory_id) or stored

    async def _current(self, memory_id: str) -> Memory | None:
        return (await self._memories.get_many([memory_id])).get(memory_id)

    async def _still_indexable(self, memory_id: str) -> bool:
        current = await self._current(memory_id)
        return current is not None and current.active

    async def index(self, memory: Memory) -> bool:
        """Embed and upsert one memory; returns whether it is now indexed.

        Returns False without raising when the provider or the vector write
        fails (the memory stays pending) or when the memory was deleted or
        deactivated while its embedding was computed.
        """
        try:
            vector = await self._vectors.embed(memory.content)
        except ProviderError as e:
            logger.warning(f"Memory {memory.id} left pending index: {e}")
            await self._mark(memory.id, IndexStatus.PENDING)
            return False

        if not await self._still_indexable(memory.id):
            logger.debug(f"Memory {memory.id} deleted during embedding, vector discarded")
            return False

        try:
            await self._vectors.upsert(memory.id, vector, VectorMeta.from_memory(memory))
        except StorageError as e:
            logger.warning(f"Memory {memory.id} left pending index: {e}")
            await self._mark(memory.id, IndexStatus.PENDING)
            return False

        # A delete that ran during the upsert removed the vector before it was written
        if not await self._still_indexable(memory.id) or not await self._mark(
            memory.id, IndexStatus.INDEXED
        ):
            await self._vectors.delete(memory.id)
            logger.debug(f"Memory {memory.id} deleted during indexing, vector removed")
            return False
        return True

    async def _mark(self, memory_id: str, status: IndexStatus) -> bool:
        try:
            await self._memories.mark_index_status(memory_id, status)
        except NotFoundError:
            return False
        return True

    async def reconcile_pending(self) -> int:
        """Retry indexing of every pending memory; returns how many succeeded."""
        pending = await self._memories.pending_index()
        if not pending:
            return 0

        indexed = 0
        for memory in pending:
            if await self.index(memory):
                indexed += 1
        logger.info(f"Reconciled {indexed}/{len(pending)} pending memories")
        return indexed
