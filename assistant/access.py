"""Model-access decisions: custom key, premium, or trial quota."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum

from assistant.errors import AuthorizationError
from assistant.memory.event_store import AuditEventStore
from assistant.memory.user_store import UsageType, UserStore
from assistant.messages import Sender, log_prefix
from assistant.profile import BotStrings

logger = logging.getLogger(__name__)


class KeySource(str, Enum):
    CUSTOM = "custom"
    PREMIUM = "premium"
    TRIAL = "trial"


class DenialReason(str, Enum):
    TRIAL_ENDED = "trial_ended"
    TRIAL_NOT_ENABLED = "trial_not_enabled"
    NO_API_KEY = "no_api_key"


@dataclass(frozen=True)
class Authorized:
    api_key: str
    source: KeySource

    def require_api_key(self) -> str:
        return self.api_key


@dataclass(frozen=True)
class Denied:
    reason: DenialReason
    used_tokens: int = 0

    def require_api_key(self) -> str:
        raise AuthorizationError(self.reason.value)


AccessDecision = Authorized | Denied


def denial_message(reason: DenialReason, strings: BotStrings) -> str:
    if reason == DenialReason.TRIAL_ENDED:
        return strings.trial_ended_error
    if reason == DenialReason.TRIAL_NOT_ENABLED:
        return strings.trial_not_enabled_error
    return strings.no_openai_key_error


class AccessControl:
    """Resolves the user record and decides which API key, if any, serves them."""

    def __init__(
        self,
        users: UserStore,
        events: AuditEventStore,
        *,
        default_api_key: str | None,
        max_trial_tokens: int,
    ) -> None:
        self._users = users
        self._events = events
        self._default_api_key = default_api_key
        self._max_trial_tokens = max_trial_tokens

    def check(self, sender: Sender) -> AccessDecision:
        prefix = log_prefix(sender)
        user = self._users.upsert(
            sender.user_id,
            username=sender.username,
            language_code=sender.language_code,
        )

        if user.openai_api_key:
            logger.info("%s [ACCESS GRANTED] user has a custom API key", prefix)
            return Authorized(user.openai_api_key, KeySource.CUSTOM)

        if user.usage_type == UsageType.PREMIUM.value:
            if not self._default_api_key:
                logger.error("%s [ACCESS DENIED] premium user but no default API key configured", prefix)
                return Denied(DenialReason.NO_API_KEY)
            logger.info("%s [ACCESS GRANTED] premium user, default API key", prefix)
            return Authorized(self._default_api_key, KeySource.PREMIUM)

        used = self._events.used_tokens(sender.user_id)
        if used < self._max_trial_tokens:
            if not self._default_api_key:
                logger.error("%s [ACCESS DENIED] trial user but no default API key configured", prefix)
                return Denied(DenialReason.NO_API_KEY, used)
            self._users.set_usage_type(sender.user_id, UsageType.TRIAL_ACTIVE)
            logger.info(
                "%s [ACCESS GRANTED] trial active, used %s of %s tokens",
                prefix,
                used,
                self._max_trial_tokens,
            )
            return Authorized(self._default_api_key, KeySource.TRIAL)

        self._users.set_usage_type(sender.user_id, UsageType.TRIAL_ENDED)
        reason = DenialReason.TRIAL_ENDED if self._max_trial_tokens > 0 else DenialReason.TRIAL_NOT_ENABLED
        logger.warning(
            "%s [ACCESS DENIED] %s, used %s of %s tokens",
            prefix,
            reason.value,
            used,
            self._max_trial_tokens,
        )
        return Denied(reason, used)
