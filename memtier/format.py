"""Prompt-context formatting for retrieved memories."""

from typing import Iterable, Union

from memtier.results import RetrievedMemory
from memtier.types import Memory, MemoryType

MEMORY_TYPE_LABELS = {
    MemoryType.FACT: "Fact",
    MemoryType.PREFERENCE: "Preference",
    MemoryType.EVENT: "Event",
    MemoryType.RELATIONSHIP: "Relationship",
    MemoryType.SKILL: "Skill",
    MemoryType.GOAL: "Goal",
    MemoryType.CONTEXT: "Context",
    MemoryType.FEEDBACK: "Feedback",
}

CONTEXT_HEADER = "## What I Remember About You"
CONTEXT_FOOTER = (
    "Use this information to personalize your response. Don't explicitly mention "
    'that you "remember" things unless relevant.'
)


def build_memory_context(memories: Iterable[Union[Memory, RetrievedMemory]]) -> str:
    """Numbered, type-labelled memory block for an LLM prompt.

    Returns an empty string when there is nothing to include.
    """
    lines = []
    for i, item in enumerate(memories, start=1):
        memory = item.memory if isinstance(item, RetrievedMemory) else item
        label = MEMORY_TYPE_LABELS.get(memory.type, memory.type.value)
        lines.append(f"{i}. [{label}] {memory.content}")

    if not lines:
        return ""

    return f"{CONTEXT_HEADER}\n\n" + "\n".join(lines) + f"\n\n{CONTEXT_FOOTER}"
