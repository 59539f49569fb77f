"""
TaskPilot Backend - Access Policy Evaluator
============================================

What:  Authentication gate for dispatched calls.
How:   Looks the ServiceMethodKey up in the access table. PUBLIC always
       passes; PROTECTED passes only for authenticated callers.
       Anything the table cannot answer cleanly (missing key, broken
       mapping, a value that is not an AccessLevel) counts as PROTECTED.

Role checks (admin-only, ownership) are NOT done here. Service methods
perform them and raise AccessDeniedError, which the dispatcher maps to 403.
"""

import logging
from typing import Any, Mapping, Optional

from taskpilot.dispatch.types import AccessLevel, CallerIdentity, Decision, ServiceMethodKey

logger = logging.getLogger(__name__)

AUTHENTICATION_REQUIRED = "authentication required"


class AccessPolicy:
    def __init__(self, access_levels: Optional[Mapping[ServiceMethodKey, Any]] = None):
        self._access_levels = access_levels if access_levels is not None else {}

    def level_for(self, key: ServiceMethodKey) -> AccessLevel:
        try:
            level = self._access_levels.get(key)
        except (AttributeError, TypeError, KeyError) as e:
            logger.warning("Access table lookup failed for %s (%s); treating as protected", key, e)
            return AccessLevel.PROTECTED
        if isinstance(level, AccessLevel):
            return level
        return AccessLevel.PROTECTED

    def evaluate(self, key: ServiceMethodKey, caller: Optional[CallerIdentity]) -> Decision:
        if self.level_for(key) is AccessLevel.PUBLIC:
            return Decision.allow()
        if caller is not None and caller.is_authenticated:
            return Decision.allow()
        return Decision.deny(AUTHENTICATION_REQUIRED)
