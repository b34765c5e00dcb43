"""Typed, user-facing filter errors and query validation."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Optional

import requests

from data_alchemist.expression import ExpressionError

MAX_QUERY_LENGTH = 1000

ERROR_TYPES = ("network", "expression", "api", "validation")


@dataclass(frozen=True)
class FilterError:
    type: str
    message: str
    details: str = ""

    def to_dict(self) -> dict[str, str]:
        return {"type": self.type, "message": self.message, "details": self.details}


NETWORK_ERROR = FilterError(
    "network",
    "Unable to connect to the AI filtering service",
    "Check your internet connection or try using manual filtering instead.",
)
EXPRESSION_ERROR = FilterError(
    "expression",
    "The filter expression could not be applied",
    "Try using simpler language or switch to manual filtering.",
)
API_ERROR = FilterError(
    "api",
    "The AI could not understand your filter request",
    'Try examples like: "name contains Corp", "skills include coding"',
)
VALIDATION_ERROR = FilterError(
    "validation",
    "Filter could not be applied",
    "Please check your input and try again.",
)


def create_user_friendly_error(error: Any) -> FilterError:
    """Map an exception or raw message onto one of the four filter error types."""
    if isinstance(error, FilterError):
        return error
    if isinstance(error, requests.RequestException):
        return NETWORK_ERROR
    if isinstance(error, ExpressionError):
        return EXPRESSION_ERROR

    message = str(error or "")
    if "API request failed" in message or "fetch" in message or "connect" in message.lower():
        return NETWORK_ERROR
    if "Invalid filter expression" in message or "Expression evaluation failed" in message:
        return EXPRESSION_ERROR
    if "No filter expression generated" in message:
        return API_ERROR
    return VALIDATION_ERROR


def validate_query(query: Any) -> tuple[bool, Optional[str]]:
    trimmed = str(query or "").strip()
    if not trimmed:
        return False, "Please enter a filter query"
    if len(trimmed) > MAX_QUERY_LENGTH:
        return False, f"Query is too long. Please keep it under {MAX_QUERY_LENGTH} characters."
    return True, None
