"""Configuration constants for the tactics companion.

All network, timing and mode settings can be overridden via environment
variables. Uses _safe_int() to validate integer env vars with range checking
and _safe_choice() for enumerated settings.
"""
import os
import logging
from typing import Tuple

_logger = logging.getLogger(__name__)


def _safe_int(env_var: str, default: int, min_val: int = 1, max_val: int = 65535) -> int:
    """Parse integer from environment variable with validation and fallback.

    Args:
        env_var: Name of the environment variable.
        default: Default value if env var is unset or invalid.
        min_val: Minimum acceptable value (inclusive).
        max_val: Maximum acceptable value (inclusive).

    Returns:
        Parsed integer, or default if parsing/validation fails.
    """
    raw = os.environ.get(env_var)
    if raw is None:
        return default
    try:
        val = int(raw)
        if val < min_val or val > max_val:
            _logger.warning(
                f"{env_var}={val} out of range [{min_val}, {max_val}], "
                f"using default {default}"
            )
            return default
        return val
    except ValueError:
        _logger.warning(
            f"{env_var}={raw!r} is not a valid integer, using default {default}"
        )
        return default


def _safe_choice(env_var: str, default: str, choices: Tuple[str, ...]) -> str:
    """Read an enumerated setting, falling back to default on unknown values."""
    raw = os.environ.get(env_var)
    if raw is None:
        return default
    val = raw.strip().lower()
    if val not in choices:
        _logger.warning(
            f"{env_var}={raw!r} not one of {', '.join(choices)}, using default {default}"
        )
        return default
    return val


def clamp(value: int, min_val: int, max_val: int) -> int:
    return max(min_val, min(max_val, value))


# Game client connection
GAME_HOST = os.environ.get("COMPANION_HOST", "127.0.0.1")
GAME_PORT = _safe_int("COMPANION_PORT", 17771, 1, 65535)
BRIDGE_TOKEN = os.environ.get("COMPANION_TOKEN", "dev")
LOG_DIR = os.environ.get("COMPANION_LOG_DIR", "logs")

# Presentation monitor (websocket fan-out of broadcast channels); 0 disables it
MONITOR_HOST = os.environ.get("COMPANION_MONITOR_HOST", "localhost")
MONITOR_PORT = _safe_int("COMPANION_MONITOR_PORT", 0, 0, 65535)

# Timing (milliseconds unless noted)
RECONNECT_DELAY_MS = _safe_int("COMPANION_RECONNECT_DELAY_MS", 1000, 50, 60000)
DEBOUNCE_MS = _safe_int("COMPANION_DEBOUNCE_MS", 100, 0, 5000)
WATCHDOG_PERIOD_MS = _safe_int("COMPANION_WATCHDOG_PERIOD_MS", 500, 50, 10000)
DECISION_TIMEOUT_MIN_MS = 1000
DECISION_TIMEOUT_MAX_MS = 60000
DECISION_TIMEOUT_MS = _safe_int(
    "COMPANION_DECISION_TIMEOUT_MS", 6000,
    DECISION_TIMEOUT_MIN_MS, DECISION_TIMEOUT_MAX_MS,
)
CHAIN_MAX_AGE_MS = _safe_int("COMPANION_CHAIN_MAX_AGE_MS", 800, 50, 10000)
CHAIN_MAX_GENERATION_LAG = _safe_int("COMPANION_CHAIN_MAX_GENERATION_LAG", 2, 0, 50)
RETRY_DELAY_MS = _safe_int("COMPANION_RETRY_DELAY_MS", 400, 0, 10000)

# Seconds
SEND_TIMEOUT_SECONDS = _safe_int("COMPANION_SEND_TIMEOUT", 10, 1, 120)
PROPOSE_TIMEOUT_SECONDS = _safe_int("COMPANION_PROPOSE_TIMEOUT", 5, 1, 300)

# How accumulated steps are submitted to the client
SUBMIT_MODE_PLAN = "plan"        # one turn_plan message with abstract steps
SUBMIT_MODE_IDS = "ids"          # select_actions with resolved ids when possible
SUBMIT_MODE_SINGLE = "single"    # first step only, as an immediate select_action
SUBMIT_MODES = (SUBMIT_MODE_PLAN, SUBMIT_MODE_IDS, SUBMIT_MODE_SINGLE)
SUBMIT_MODE = _safe_choice("COMPANION_SUBMIT_MODE", SUBMIT_MODE_PLAN, SUBMIT_MODES)

# Board orientation: infer from action listings, or pin it
ORIENTATION_AUTO = "auto"
ORIENTATION_AS_IS = "as_is"
ORIENTATION_FLIPPED = "flipped"
ORIENTATIONS = (ORIENTATION_AUTO, ORIENTATION_AS_IS, ORIENTATION_FLIPPED)
ORIENTATION = _safe_choice("COMPANION_ORIENTATION", ORIENTATION_AUTO, ORIENTATIONS)

# Default board width when the snapshot omits it
DEFAULT_BOARD_WIDTH = 9

# Error reasons that mean "the client was not ready for a batch yet"
BATCH_PRECONDITION_MARKERS = ("inflight", "busy", "batch", "pending")

# Outbound message types
MSG_SUBSCRIBE = "subscribe"
MSG_SELECT_ACTION = "select_action"
MSG_SELECT_ACTIONS = "select_actions"
MSG_TURN_PLAN = "turn_plan"

# Inbound message types
MSG_STATE = "state"
MSG_AVAILABLE_ACTIONS = "available_actions"
MSG_TACTICAL_PREVIEW = "tactical_preview"
MSG_ACTION_RESULT = "action_result"
MSG_ACTION_ERROR = "action_error"
MSG_PLAN_RESULT = "plan_result"
MSG_PLAN_ERROR = "plan_error"
MSG_ACTION_BATCH_SUMMARY = "action_batch_summary"
MSG_GAME_READY = "game_ready"
MSG_GAME_OVER = "game_over"
MSG_SUBSCRIBE_ACK = "subscribe_ack"
MSG_ERROR = "error"

# Presentation broadcast channels
CHANNEL_DECISION_LOG = "decision_log"
CHANNEL_PLAN_RESULT = "plan_result"
CHANNEL_AVAILABLE_ACTIONS = "available_actions"
CHANNEL_STATE = "state"
CHANNEL_CHAIN = "chain"
CHANNEL_WATCHDOG = "watchdog"
CHANNEL_TURN = "turn"
