"""Redis-backed workflow state for population runs."""

import json
import os
from typing import Dict, Any
from datetime import datetime

import redis

from gastos_analytics.utils.errors import StateManagerError
from gastos_analytics.utils.logging import get_logger
from gastos_analytics.utils.metrics import workflow_state_saves

logger = get_logger(__name__)

STATE_TTL_SECONDS = 86400  # 24 hours

# In-memory state backend for local runs and tests
_in_memory_state: Dict[str, Dict[str, Any]] = {}

_redis_client = None


def _state_backend() -> str:
    return os.getenv("STATE_BACKEND", "redis")  # "redis" or "memory"


def get_redis_client():
    """
    Lazily connect to Redis.

    Returns:
        Redis client, or None when Redis is unreachable
    """
    global _redis_client
    if _redis_client is not None:
        return _redis_client

    try:
        redis_host, redis_port = os.getenv("REDIS_HOST", "localhost:6379").split(':')
        client = redis.Redis(
            host=redis_host,
            port=int(redis_port),
            db=int(os.getenv("REDIS_DB", 0)),
            decode_responses=True,
            socket_keepalive=True,
            socket_connect_timeout=5
        )
        client.ping()
        logger.info("Connected to Redis", host=redis_host, port=redis_port)
        _redis_client = client
    except (redis.RedisError, ValueError) as e:
        logger.warning(f"Redis connection failed, state will not be persisted: {e}")
        return None
    return _redis_client


def _state_key(run_id: str) -> str:
    return f"analytics:{run_id}:state"


def save_workflow_state(run_id: str, state: Dict[str, Any]) -> None:
    """
    Merge state into the run's saved workflow state.

    Args:
        run_id: Unique population run ID
        state: State fields to save

    Raises:
        StateManagerError: If the Redis write fails
    """
    if _state_backend() == "memory":
        merged = {**_in_memory_state.get(run_id, {}), **state}
        _in_memory_state[run_id] = merged
        workflow_state_saves.labels(status="success").inc()
        logger.debug("Saved workflow state (in-memory)", run_id=run_id)
        return

    client = get_redis_client()
    if not client:
        logger.warning("Redis unavailable, state not saved", run_id=run_id)
        return

    try:
        key = _state_key(run_id)
        current = client.get(key)
        merged = {**(json.loads(current) if current else {}), **state}
        client.setex(key, STATE_TTL_SECONDS, json.dumps(merged, default=str))
        workflow_state_saves.labels(status="success").inc()
        logger.debug("Saved workflow state", run_id=run_id)
    except (redis.RedisError, TypeError, ValueError) as e:
        workflow_state_saves.labels(status="failure").inc()
        raise StateManagerError(f"Failed to save workflow state: {e}")


def restore_workflow_state(run_id: str) -> Dict[str, Any]:
    """
    Restore workflow state from Redis or in-memory store.

    Args:
        run_id: Unique population run ID

    Returns:
        State dictionary, or empty dict if not found
    """
    if _state_backend() == "memory":
        return dict(_in_memory_state.get(run_id, {}))

    client = get_redis_client()
    if not client:
        logger.warning("Redis unavailable, returning empty state")
        return {}

    try:
        value = client.get(_state_key(run_id))
        if value:
            return json.loads(value)
        logger.warning(f"No saved state found for {run_id}")
        return {}
    except (redis.RedisError, ValueError) as e:
        logger.error(f"Failed to restore workflow state: {e}")
        return {}


def mark_run_complete(run_id: str, summary: Dict[str, Any], status: str = "completed") -> None:
    """
    Mark a population run as finished and save its final report.

    Args:
        run_id: Unique population run ID
        summary: Final run report
        status: "completed", or "stopped" when a stop was requested
    """
    save_workflow_state(run_id, {
        'status': status,
        'summary': summary,
        'completed_at': datetime.now().isoformat()
    })


def check_redis_health() -> bool:
    """
    Check if Redis connection is healthy.

    Returns:
        True if Redis is reachable, False otherwise
    """
    client = get_redis_client()
    if not client:
        return False

    try:
        client.ping()
        return True
    except redis.RedisError:
        return False
