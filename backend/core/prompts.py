"""
Prompt templates — memory block, tool follow-up and router instructions.

Kept in one place so the pipeline and the router compose identical text.
"""

from typing import Sequence

from memory import HistoryItem


# ── Memory Block ──

RECENT_HEADER = "== Short-term memory (recent messages) =="
FACTS_HEADER = "== Structured state (facts) =="
FACTS_PREAMBLE = "Use these facts as ground truth unless the user informs an update."
SEMANTIC_HEADER = "== Relevant semantic memory =="


def _turn_lines(items: Sequence[HistoryItem]) -> str:
    return "".join(f"{h.role}: {h.text}\n" for h in items)


def build_memory_block(recent: Sequence[HistoryItem], facts: dict[str, str],
                       similar: Sequence[HistoryItem]) -> str:
    """Compose the memory block: recent turns, facts, semantic matches.

    Empty sections are omitted; returns "" when all are empty.
    """
    sections = []
    if recent:
        sections.append(f"{RECENT_HEADER}\n{_turn_lines(recent)}")
    if facts:
        lines = "".join(f"- {entity}: {facts[entity]}\n" for entity in sorted(facts))
        sections.append(f"{FACTS_HEADER}\n{FACTS_PREAMBLE}\n{lines}")
    if similar:
        sections.append(f"{SEMANTIC_HEADER}\n{_turn_lines(similar)}")
    return "\n".join(sections)


# ── Tool Follow-up ──

def tool_result_prompt(tool_name: str, output: str) -> str:
    return (
        f"The result of tool '{tool_name}' was:\n{output}\n"
        "You MUST use this information to answer the user."
    )


# ── Router ──

ROUTER_RULES = """== Routing rules ==
Choose exactly ONE of the following prompt files and answer ONLY with the file name.
Allowed options:
{options}
Output format: only the file name (e.g. tecnico.md). Do not include explanations.
"""


def build_router_prompt(router_instructions: str, candidates: Sequence[str]) -> str:
    options = "".join(f"- {c}\n" for c in candidates)
    return f"{router_instructions}\n\n{ROUTER_RULES.format(options=options)}"


def routing_query(memory_block: str, user_message: str) -> str:
    """Routing input: the memory block, when present, followed by the literal message."""
    if not memory_block:
        return user_message
    return f"{memory_block}\nUser now: {user_message}"
