"""
Configuration — execution limits and protocol constants.

User-configurable values come from agent.yaml via get_settings().
The values here are code constants shared across the pipeline.
"""

# ── Turn Limits ──
DEFAULT_TURN_TIMEOUT = 60.0  # seconds, applied when the caller sets none
DEFAULT_SEMANTIC_TOP_K = 5
DEFAULT_TOOL_TOP_K = 5

# ── Model Service ──
MODEL_SERVICE_TIMEOUT = 60.0
MODEL_SERVICE_MAX_ATTEMPTS = 3
MODEL_SERVICE_BACKOFF = 0.3  # seconds, multiplied by the attempt number

# ── Tool Protocol ──
TOOL_MARKER = "TOOL:"
TOOL_NO_ROWS = "No results found."
TOOL_RESULT_SEPARATOR = "\n---\n"
TOOL_UNSUPPORTED = "tool kind not supported yet"

# ── Router ──
ROUTER_MAX_OUTPUT_TOKENS = 32
ROUTER_DEFAULT_PROMPT = "geral.md"
PROMPT_EXTENSION = ".md"

# ── Metadata Keys ──
META_RESPONSE_RAW = "response_raw"
META_TOOL_USED = "tool_used"
