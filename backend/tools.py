"""
Agent Tools — declarative tool catalog and dispatcher.

Tools are declared in a YAML catalog (tools.yml) and requested by the model
with a single-line ``TOOL:<name> arg1 arg2`` reply. Supported kinds:

  - sql:            parametrized query ($1, $2 ...) against a SQLite database
  - sql_embedding:  nearest-neighbour lookup over a table with an embedding column
  - script:         a registered Python callable (see tools_scripting.py)

Connection references may use ``ENV:NAME`` to read the value from the
environment at load time. The catalog is read-only after loading.
"""

import asyncio
import logging
import os
import re
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Optional

import numpy as np
import yaml

from config import DEFAULT_TOOL_TOP_K, TOOL_NO_ROWS, TOOL_RESULT_SEPARATOR, TOOL_UNSUPPORTED
from db import db_connection_row
from inference.base import ModelService
from memory import cosine_distances, decode_vector
from tools_scripting import ScriptRegistry, run_script

logger = logging.getLogger(__name__)

ENV_PREFIX = "ENV:"

_PLACEHOLDER = re.compile(r"\$(\d+)")
_IDENTIFIER = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*(\.[A-Za-z_][A-Za-z0-9_]*)?$")


@dataclass(frozen=True)
class ToolDefinition:
    name: str
    kind: str
    description: str = ""
    conn: str = ""
    query_template: str = ""
    table: str = ""
    column: str = ""
    embedding_model: str = ""
    top_k: int = 0
    function: str = ""


class ToolCatalog:
    """Immutable name -> ToolDefinition lookup."""

    def __init__(self, tools: Optional[list[ToolDefinition]] = None):
        self._tools: dict[str, ToolDefinition] = {}
        for tool in tools or []:
            if tool.name in self._tools:
                logger.warning("Duplicate tool '%s' in catalog, keeping the first", tool.name)
                continue
            self._tools[tool.name] = tool

    def get(self, name: str) -> Optional[ToolDefinition]:
        return self._tools.get(name)

    def names(self) -> list[str]:
        return list(self._tools)

    def __len__(self) -> int:
        return len(self._tools)

    def __contains__(self, name: str) -> bool:
        return name in self._tools


def _resolve_conn(conn: str) -> str:
    if conn.startswith(ENV_PREFIX):
        return os.environ.get(conn[len(ENV_PREFIX):], "")
    return conn


def _parse_tool(entry: dict) -> ToolDefinition:
    known = {f.name for f in fields(ToolDefinition)}
    data = {k: v for k, v in entry.items() if k in known}
    # Catalog files write the kind as "type"
    if "kind" not in data and "type" in entry:
        data["kind"] = entry["type"]
    if not data.get("name"):
        raise ValueError(f"tool entry without a name: {entry}")
    data["name"] = str(data["name"])
    data["kind"] = str(data.get("kind") or "")
    data["conn"] = _resolve_conn(str(data.get("conn") or ""))
    data["top_k"] = int(data.get("top_k") or 0)
    return ToolDefinition(**data)


def load_tool_catalog(path) -> ToolCatalog:
    """Load a YAML tool catalog.

    Raises:
        FileNotFoundError: when the catalog file does not exist.
        ValueError: when the file is not a valid catalog.
    """
    path = Path(path)
    with open(path) as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ValueError(f"{path}: expected a mapping with a 'tools' list")
    entries = data.get("tools") or []
    if not isinstance(entries, list):
        raise ValueError(f"{path}: 'tools' must be a list")

    catalog = ToolCatalog([_parse_tool(e) for e in entries if isinstance(e, dict)])
    logger.info("Loaded %d tools from %s", len(catalog), path)
    return catalog


# ── Kind: sql ──

def _render_rows(rows) -> str:
    out = ""
    for row in rows:
        out += "".join(f"{col}={row[col]} " for col in row.keys()) + "\n"
    return out or TOOL_NO_ROWS


def _run_query(conn_ref: str, template: str, args: list[str]) -> str:
    sql = _PLACEHOLDER.sub(r"?\1", template)
    with db_connection_row(conn_ref) as conn:
        rows = conn.execute(sql, tuple(args)).fetchall()
        conn.commit()
    return _render_rows(rows)


# ── Kind: sql_embedding ──

def _fetch_embedded_rows(conn_ref: str, table: str, column: str) -> list[tuple]:
    sql = f"SELECT {column}, embedding FROM {table} WHERE embedding IS NOT NULL"
    with db_connection_row(conn_ref) as conn:
        return [(r[0], r[1]) for r in conn.execute(sql).fetchall()]


class ToolDispatcher:
    """Executes catalog tools on behalf of the chat pipeline."""

    def __init__(self, catalog: ToolCatalog, model_service: ModelService,
                 scripts: Optional[ScriptRegistry] = None):
        self.catalog = catalog
        self.model_service = model_service
        self.scripts = scripts or ScriptRegistry()

    def get(self, name: str) -> Optional[ToolDefinition]:
        return self.catalog.get(name)

    async def execute(self, tool: ToolDefinition, args: list[str], user_message: str) -> str:
        """Run a tool and return its output as text. Never raises for tool failures."""
        logger.info("Executing tool %s (%s) with %d args", tool.name, tool.kind, len(args))
        try:
            if tool.kind == "sql":
                return await self._exec_sql(tool, args)
            if tool.kind == "sql_embedding":
                query = " ".join(args) if args else user_message
                return await self._exec_sql_embedding(tool, query)
            if tool.kind == "script":
                return await run_script(self.scripts, tool.function, args)
            return TOOL_UNSUPPORTED
        except Exception as e:
            logger.warning("Tool %s failed: %s", tool.name, e)
            return f"error executing tool {tool.name}: {e}"

    async def _exec_sql(self, tool: ToolDefinition, args: list[str]) -> str:
        if not tool.conn:
            raise ValueError(f"tool {tool.name} has no connection configured")
        if not tool.query_template:
            raise ValueError(f"tool {tool.name} has no query_template")
        return await asyncio.to_thread(_run_query, tool.conn, tool.query_template, args)

    async def _exec_sql_embedding(self, tool: ToolDefinition, query: str) -> str:
        if not (tool.table and tool.column and tool.embedding_model):
            raise ValueError(
                f"tool {tool.name} misconfigured: table/column/embedding_model are required"
            )
        for ident in (tool.table, tool.column):
            if not _IDENTIFIER.match(ident):
                raise ValueError(f"invalid identifier: {ident!r}")
        if not tool.conn:
            raise ValueError(f"tool {tool.name} has no connection configured")
        top_k = tool.top_k if tool.top_k > 0 else DEFAULT_TOOL_TOP_K

        try:
            embedding = await self.model_service.embed(tool.embedding_model, query)
        except Exception as e:
            raise RuntimeError(f"embedding failed: {e}") from e

        rows = await asyncio.to_thread(_fetch_embedded_rows, tool.conn, tool.table, tool.column)
        if not rows:
            return TOOL_NO_ROWS

        query_vec = np.asarray(embedding, dtype=np.float32)
        matrix = np.array([decode_vector(r[1]) for r in rows], dtype=np.float32)
        if matrix.ndim != 2 or matrix.shape[1] != query_vec.size:
            raise ValueError(
                f"embedding dimension mismatch in {tool.table}: query has {query_vec.size}"
            )
        order = np.argsort(cosine_distances(matrix, query_vec), kind="stable")[:top_k]
        return TOOL_RESULT_SEPARATOR.join(str(rows[i][0]) for i in order)
