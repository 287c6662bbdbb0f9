"""Device details parsed from the User-Agent header, using the user-agents library."""

import logging
from dataclasses import dataclass
from typing import Optional

from user_agents import parse as parse_user_agent


logger = logging.getLogger(__name__)

MAX_USER_AGENT_LENGTH = 512


@dataclass(frozen=True)
class DeviceInfo:
    user_agent: Optional[str] = None
    browser: Optional[str] = None
    os: Optional[str] = None
    device: Optional[str] = None
    is_mobile: bool = False


@dataclass(frozen=True)
class RequestContext:
    """Request metadata the HTTP layer hands to the service."""
    user_agent: Optional[str] = None
    ip_address: Optional[str] = None


def parse_device(user_agent: Optional[str]) -> DeviceInfo:
    """
    Parse a user agent string into session device fields.

    Fail-open: unparseable agents keep the raw string and nothing else.
    """
    if not user_agent:
        return DeviceInfo()

    raw = user_agent[:MAX_USER_AGENT_LENGTH]
    try:
        ua = parse_user_agent(raw)
    except Exception as e:
        logger.warning("Failed to parse user agent %r: %s", raw[:100], e)
        return DeviceInfo(user_agent=raw)

    return DeviceInfo(
        user_agent=raw,
        browser=ua.browser.family or None,
        os=ua.os.family or None,
        device=_device_type(ua),
        is_mobile=bool(ua.is_mobile),
    )


def _device_type(ua) -> str:
    if ua.is_mobile:
        return "mobile"
    if ua.is_tablet:
        return "tablet"
    if ua.is_pc:
        return "desktop"
    if ua.is_bot:
        return "bot"
    return "other"
