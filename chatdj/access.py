from __future__ import annotations
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Type

from .commands import Command, SetVolume, SkipNext

logger = logging.getLogger(__name__)


@dataclass
class AccessDecision:
    allowed: bool
    allow_list: List[str] = field(default_factory=list)


class AccessPolicy:
    def __init__(
        self,
        *,
        bot_username: Optional[str],
        subscribers_only: bool = False,
        skip_allowed_users: Optional[List[str]] = None,
        set_volume_allowed_users: Optional[List[str]] = None,
    ):
        self.bot_username = (bot_username or '').lower()
        self.subscribers_only = subscribers_only
        self._allow_lists: Dict[Type, List[str]] = {
            SkipNext: [u.lower() for u in skip_allowed_users or []],
            SetVolume: [u.lower() for u in set_volume_allowed_users or []],
        }

    def is_self(self, username: str, is_self: bool = False) -> bool:
        return is_self or (bool(self.bot_username) and (username or '').lower() == self.bot_username)

    def subscriber_gate(self, is_subscriber: bool) -> bool:
        return not self.subscribers_only or bool(is_subscriber)

    def allow_list_gate(self, command: Command, username: str) -> AccessDecision:
        allow_list = self._allow_lists.get(type(command), [])
        if not allow_list:
            return AccessDecision(True, [])
        allowed = (username or '').lower() in allow_list
        if not allowed:
            logger.info(
                "%s is not allowed to use %s (allowed: %s)",
                username,
                type(command).__name__,
                ', '.join(allow_list),
            )
        return AccessDecision(allowed, list(allow_list))
