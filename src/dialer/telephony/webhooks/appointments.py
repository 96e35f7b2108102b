"""
Appointment extraction from provider webhook payloads.

The payload is walked breadth-first with explicit depth and node limits.
Each mapping is decoded as a ToolInvocation; the first invocation whose name
matches the booking tool yields the appointment.
"""

import json
import re
from collections import deque
from collections.abc import Mapping
from typing import Any

from pydantic import BaseModel, ConfigDict, ValidationError, field_validator

from dialer.shared.logging import get_logger

logger = get_logger(__name__)

BOOKING_TOOL_PATTERN = re.compile(r"book_appointment", re.IGNORECASE)
APPOINTMENT_SOURCE = "provider_tool_call"

MAX_DEPTH = 12
MAX_NODES = 10_000


class ToolInvocation(BaseModel):
    """A tool call record embedded in a transcript or analysis object."""

    model_config = ConfigDict(extra="ignore")

    name: str
    arguments: dict[str, Any] = {}
    tool_call_id: str | None = None
    execution_message: str | None = None
    role: str | None = None

    @field_validator("arguments", mode="before")
    @classmethod
    def _decode_arguments(cls, v: Any) -> Any:
        if v is None:
            return {}
        if isinstance(v, str):
            try:
                decoded = json.loads(v)
            except ValueError:
                logger.warning("Tool invocation arguments are not valid JSON")
                return {}
            return decoded if isinstance(decoded, dict) else {}
        return v

    @property
    def is_booking(self) -> bool:
        return bool(BOOKING_TOOL_PATTERN.search(self.name))


class AppointmentData(BaseModel):
    """Normalized appointment captured from a booking tool invocation."""

    model_config = ConfigDict(frozen=True)

    booked: bool = True
    time_text: str | None = None
    name: str | None = None
    email: str | None = None
    tool_call_id: str | None = None
    execution_message: str | None = None
    source: str = APPOINTMENT_SOURCE

    @classmethod
    def from_invocation(cls, invocation: ToolInvocation) -> "AppointmentData":
        args = invocation.arguments
        time_text = args.get("time") or args.get("datetime") or args.get("date")
        return cls(
            time_text=_as_text(time_text),
            name=_as_text(args.get("name")),
            email=_as_text(args.get("email")),
            tool_call_id=invocation.tool_call_id,
            execution_message=invocation.execution_message
            or _as_text(args.get("execution_message")),
        )


def _as_text(value: Any) -> str | None:
    if value is None or value == "":
        return None
    return str(value)


def _decode_invocation(node: Mapping[str, Any]) -> ToolInvocation | None:
    name = node.get("name")
    if not isinstance(name, str) or not name:
        return None
    try:
        return ToolInvocation.model_validate(node)
    except ValidationError:
        return None


def extract_appointment(
    payload: Any,
    max_depth: int = MAX_DEPTH,
    max_nodes: int = MAX_NODES,
) -> AppointmentData | None:
    """Find the first booking tool invocation in the payload.

    Args:
        payload: Decoded JSON webhook body (or any nested part of it).
        max_depth: Deepest nesting level inspected.
        max_nodes: Maximum number of containers visited.

    Returns:
        AppointmentData, or None when no booking invocation exists.
    """
    queue: deque[tuple[Any, int]] = deque([(payload, 0)])
    visited = 0

    while queue and visited < max_nodes:
        node, depth = queue.popleft()
        visited += 1

        if isinstance(node, Mapping):
            invocation = _decode_invocation(node)
            if invocation is not None and invocation.is_booking:
                return AppointmentData.from_invocation(invocation)
            children = node.values()
        elif isinstance(node, list):
            children = node
        else:
            continue

        if depth >= max_depth:
            continue
        for child in children:
            if isinstance(child, (Mapping, list)):
                queue.append((child, depth + 1))

    return None
