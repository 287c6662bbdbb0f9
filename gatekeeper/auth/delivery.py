"""
Gatekeeper - Message Dispatch

Interface to the outbound message-delivery collaborator.
Dispatch is fire-and-forget from the service's point of view: a failed
delivery is logged and never undoes the state change that preceded it.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Protocol


logger = logging.getLogger(__name__)


class MessagePurpose(str, Enum):
    VERIFICATION = "verification"
    SIGNIN = "signin"
    RESET = "reset"
    WELCOME = "welcome"
    PASSWORD_CHANGED = "password_changed"


@dataclass(frozen=True)
class DispatchRequest:
    to_email: str
    purpose: MessagePurpose
    recipient_name: str
    code: Optional[str] = None


class MessageDispatcher(Protocol):
    async def dispatch(self, request: DispatchRequest) -> None:
        ...


def mask_email(email: str) -> str:
    """Log-safe form of an address: first character and domain only."""
    local, _, domain = email.partition("@")
    if not domain:
        return "***"
    return f"{local[:1]}***"


class LoggingDispatcher:
    """
    Default dispatcher: records that a message would be sent.

    Codes are never written to the log.
    """

    async def dispatch(self, request: DispatchRequest) -> None:
        logger.info(
            "Dispatching %s message to %s",
            request.purpose.value, mask_email(request.to_email),
        )
