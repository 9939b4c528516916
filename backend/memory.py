"""
Conversation Memory — durable per-session turn log with semantic recall.

Turns are persisted in SQLite together with their embeddings, stored as
decimal vector literals ("[0.1,-0.25,...]"). Similarity search ranks turns by
cosine distance with numpy. Structured facts are not stored: they are
projected from tool-usage metadata on every read.
"""

import json
import logging
import re
import threading
import time
from dataclasses import dataclass
from typing import Any, Optional, Sequence

import numpy as np

from config import DEFAULT_SEMANTIC_TOP_K, META_TOOL_USED
from db import open_connection

logger = logging.getLogger(__name__)

ROLES = ("user", "assistant", "system")

_STATUS_PATTERN = re.compile(r"status=\s*(\S+)", re.IGNORECASE)

_SCHEMA = """
CREATE TABLE IF NOT EXISTS chat_memory (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    session_id TEXT NOT NULL,
    role TEXT NOT NULL CHECK (role IN ('user', 'assistant', 'system')),
    text TEXT NOT NULL,
    embedding TEXT,
    created_at REAL NOT NULL
);
CREATE INDEX IF NOT EXISTS chat_memory_session_idx ON chat_memory (session_id);

CREATE TABLE IF NOT EXISTS metadata (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    message_id INTEGER NOT NULL REFERENCES chat_memory(id) ON DELETE CASCADE,
    key TEXT NOT NULL,
    value TEXT NOT NULL,
    created_at REAL NOT NULL
);
CREATE INDEX IF NOT EXISTS metadata_message_idx ON metadata (message_id);
"""


@dataclass
class HistoryItem:
    role: str
    text: str
    id: Optional[int] = None


# ── Vector Codec ──

def encode_vector(values: Sequence[float]) -> str:
    """Serialize an embedding as a decimal vector literal.

    Components are rounded to float32 and printed in their shortest form.
    NaN and infinities become 0 so a bad component never corrupts the row.
    """
    if len(values) == 0:
        return "[]"
    arr = np.asarray(values, dtype=np.float64)
    arr[~np.isfinite(arr)] = 0.0
    with np.errstate(over="ignore"):
        arr32 = arr.astype(np.float32)
    arr32[~np.isfinite(arr32)] = 0.0
    return "[" + ",".join(np.format_float_positional(x, trim="-") for x in arr32) + "]"


def decode_vector(literal: str) -> list[float]:
    """Parse a decimal vector literal back into floats."""
    values = json.loads(literal)
    if not isinstance(values, list):
        raise ValueError(f"not a vector literal: {literal[:40]!r}")
    return [float(v) for v in values]


def cosine_distances(matrix: np.ndarray, query: np.ndarray) -> np.ndarray:
    """Cosine distance (1 - similarity) between each matrix row and the query."""
    norms = np.linalg.norm(matrix, axis=1) * np.linalg.norm(query)
    return 1.0 - (matrix @ query) / (norms + 1e-10)


def parse_status(tool_output: str) -> str:
    """Extract the token after a case-insensitive ``status=`` marker."""
    match = _STATUS_PATTERN.search(tool_output.strip())
    return match.group(1) if match else ""


class ConversationMemory:
    """Append-only turn log scoped by session id."""

    def __init__(self, db_path: str, embedding_dim: int, fact_tool: str = "db_boleto"):
        if embedding_dim <= 0:
            raise ValueError(f"embedding_dim must be positive, got {embedding_dim}")
        self.db_path = db_path
        self.embedding_dim = embedding_dim
        self.fact_tool = fact_tool
        self.db = open_connection(db_path)
        try:
            self.db.executescript(_SCHEMA)
            self.db.commit()
        except Exception:
            self.db.close()
            raise
        logger.debug("Conversation memory ready at %s (dim=%d)", db_path, embedding_dim)

    def close(self):
        self.db.close()

    # ── Writes ──

    async def append(self, session_id: str, role: str, text: str,
                     embedding: Optional[Sequence[float]] = None) -> int:
        """Append a turn and return its id. Empty embeddings are stored as NULL."""
        if role not in ROLES:
            raise ValueError(f"invalid role {role!r}")
        vector = None
        if embedding is not None and len(embedding) > 0:
            if len(embedding) != self.embedding_dim:
                raise ValueError(
                    f"embedding has {len(embedding)} dimensions, expected {self.embedding_dim}"
                )
            vector = encode_vector(embedding)

        cur = self.db.execute(
            "INSERT INTO chat_memory (session_id, role, text, embedding, created_at) "
            "VALUES (?, ?, ?, ?, ?)",
            (session_id, role, text, vector, time.time()),
        )
        self.db.commit()
        return cur.lastrowid

    async def attach_metadata(self, message_id: int, key: str, value: Any):
        """Attach a JSON-serializable value to an existing turn."""
        payload = json.dumps(value, ensure_ascii=False)
        self.db.execute(
            "INSERT INTO metadata (message_id, key, value, created_at) VALUES (?, ?, ?, ?)",
            (message_id, key, payload, time.time()),
        )
        self.db.commit()

    # ── Reads ──

    async def similarity_search(self, session_id: str, query_embedding: Sequence[float],
                                top_k: int = DEFAULT_SEMANTIC_TOP_K) -> list[HistoryItem]:
        """Nearest turns by cosine distance, closest first.

        Ties keep ascending turn id order (stable sort over id-ordered rows).
        """
        if top_k <= 0:
            top_k = DEFAULT_SEMANTIC_TOP_K
        query = np.asarray(query_embedding, dtype=np.float32)
        if query.size != self.embedding_dim:
            raise ValueError(
                f"query embedding has {query.size} dimensions, expected {self.embedding_dim}"
            )

        rows = self.db.execute(
            "SELECT id, role, text, embedding FROM chat_memory "
            "WHERE session_id = ? AND embedding IS NOT NULL ORDER BY id ASC",
            (session_id,),
        ).fetchall()
        if not rows:
            return []

        matrix = np.array([decode_vector(r["embedding"]) for r in rows], dtype=np.float32)
        distances = cosine_distances(matrix, query)
        order = np.argsort(distances, kind="stable")[:top_k]
        return [HistoryItem(role=rows[i]["role"], text=rows[i]["text"], id=rows[i]["id"])
                for i in order]

    async def recent(self, session_id: str, depth: int) -> list[HistoryItem]:
        """Last ``depth`` turns of the session, oldest first."""
        if depth <= 0:
            return []
        rows = self.db.execute(
            "SELECT id, role, text FROM chat_memory WHERE session_id = ? "
            "ORDER BY created_at DESC, id DESC LIMIT ?",
            (session_id, depth),
        ).fetchall()
        items = [HistoryItem(role=r["role"], text=r["text"], id=r["id"]) for r in rows]
        items.reverse()
        return items

    async def derive_facts(self, session_id: str) -> dict[str, str]:
        """Project entity id -> status from the session's tool-usage history.

        Scans every ``tool_used`` record in chronological order, so the most
        recent invocation per entity wins. Cost grows with session history.
        """
        rows = self.db.execute(
            "SELECT m.value FROM metadata m "
            "JOIN chat_memory c ON c.id = m.message_id "
            "WHERE c.session_id = ? AND m.key = ? "
            "ORDER BY c.created_at ASC, c.id ASC, m.id ASC",
            (session_id, META_TOOL_USED),
        ).fetchall()

        facts: dict[str, str] = {}
        fact_tool = self.fact_tool.lower()
        for row in rows:
            try:
                used = json.loads(row["value"])
            except json.JSONDecodeError:
                continue
            if not isinstance(used, dict):
                continue
            if str(used.get("tool_requested") or "").lower() != fact_tool:
                continue
            args = used.get("tool_args") or []
            if not args:
                continue
            entity_id = str(args[0]).strip()
            if not entity_id:
                continue
            status = parse_status(str(used.get("tool_output") or ""))
            if status:
                facts[entity_id] = status
        return facts


# ── Process-wide Instance ──

_memory: Optional[ConversationMemory] = None
_memory_lock = threading.Lock()


def init_memory(db_path: str, embedding_dim: int, fact_tool: str = "db_boleto") -> ConversationMemory:
    """Open the shared store once. Later calls return the same instance.

    A failed initialization is not cached, so the next call retries.
    """
    global _memory
    with _memory_lock:
        if _memory is None:
            _memory = ConversationMemory(db_path, embedding_dim, fact_tool)
            logger.info("Conversation memory online: %s", db_path)
        return _memory
