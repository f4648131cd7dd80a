"""Shared response helpers for tool implementations."""

from __future__ import annotations

import json
import logging
from typing import Any

from stockspark_mcp.clients.errors import StockSparkError

logger = logging.getLogger(__name__)


def build_json_response(payload: dict[str, Any]) -> str:
    return json.dumps(payload, indent=2, default=str)


def format_error(
    *,
    tool_name: str,
    code: str,
    message: str,
    status: int | None = None,
    details: dict[str, Any] | None = None,
) -> str:
    payload: dict[str, Any] = {
        "error": True,
        "tool": tool_name,
        "code": code,
        "message": message,
    }
    if status is not None:
        payload["status"] = status
    if details:
        payload["details"] = details
    return build_json_response(payload)


def format_client_error(tool_name: str, exc: StockSparkError) -> str:
    return format_error(
        tool_name=tool_name,
        code=exc.code,
        message=str(exc),
        status=exc.status,
        details=exc.details,
    )


def log_and_return_tool_error(*, tool_name: str, exc: BaseException, user_message: str) -> str:
    """Log an unexpected tool failure with its traceback and hand back a safe message."""
    logger.error("Tool %s failed: %s", tool_name, exc, exc_info=exc)
    return user_message
