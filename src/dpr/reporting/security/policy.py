# src/dpr/reporting/security/policy.py
"""
Row-level and access policy evaluation.

A product definition carries a list of policies. Each policy holds rules made
of conditions evaluated against the user context, and a list of SQL predicate
templates ("actions") applied when the policy permits.

Rule semantics: every rule of a policy must evaluate to PERMIT for the policy
to permit (fail-closed). A policy without rules permits.

Placeholders understood in conditions and actions:
    ${token}      the caller's auth token
    ${role}       the caller's roles
    ${caseload}   the active caseload, rendered as a quoted SQL literal
    ${caseloads}  all caseloads, rendered as a parenthesised SQL list
    ${username}   the username, rendered as a quoted SQL literal
"""
from __future__ import annotations

import logging
from typing import Callable, List, Optional

from pydantic import BaseModel, ConfigDict, Field
from sqlglot import exp

from dpr.reporting.core.enums import LowercaseEnum
from dpr.reporting.security.models import UserContext

logger = logging.getLogger(__name__)

TOKEN = "${token}"
ROLE = "${role}"
CASELOAD = "${caseload}"
CASELOADS = "${caseloads}"
USERNAME = "${username}"

TRUE = "TRUE"
FALSE = "FALSE"

PlaceholderResolver = Callable[[str], str]


class Effect(LowercaseEnum):
    PERMIT = "permit"
    DENY = "deny"


class PolicyType(LowercaseEnum):
    ROW_LEVEL = "row-level"
    ACCESS = "access"


def _sql_literal(value: str) -> str:
    return exp.Literal.string(value).sql()


def _present(user: Optional[UserContext], placeholder: str) -> bool:
    if user is None:
        return False
    if placeholder == TOKEN:
        return user.token is not None
    if placeholder == ROLE:
        return bool(user.roles)
    if placeholder == CASELOAD:
        return user.active_caseload is not None
    if placeholder == CASELOADS:
        return bool(user.caseloads)
    logger.warning("Unknown placeholder in exists condition: %s", placeholder)
    return False


class DefaultPlaceholderResolver:
    """Interpolates user attributes into a policy string.

    If the string needs a value the user does not have, the whole string
    resolves to FALSE so the resulting predicate denies.
    """

    def __init__(self, user: Optional[UserContext]):
        self.user = user

    def __call__(self, s: str) -> str:
        interpolated = s
        if CASELOADS in interpolated:
            if not _present(self.user, CASELOADS):
                return FALSE
            caseloads = ", ".join(_sql_literal(c) for c in self.user.caseloads)
            interpolated = interpolated.replace(CASELOADS, f"({caseloads})")
        if CASELOAD in interpolated:
            if not _present(self.user, CASELOAD):
                return FALSE
            interpolated = interpolated.replace(
                CASELOAD, _sql_literal(self.user.active_caseload)
            )
        if USERNAME in interpolated:
            if self.user is None or self.user.username is None:
                return FALSE
            interpolated = interpolated.replace(
                USERNAME, _sql_literal(self.user.username)
            )
        return interpolated


class Condition(BaseModel):
    match: Optional[List[str]] = None
    exists: Optional[List[str]] = None

    model_config = ConfigDict(frozen=True)

    def execute(
        self, user: Optional[UserContext], resolver: PlaceholderResolver
    ) -> bool:
        if self.match is None and self.exists is None:
            return False
        if self.match is not None and not self._execute_match(user, resolver):
            return False
        if self.exists is not None:
            return all(_present(user, placeholder) for placeholder in self.exists)
        return True

    def _execute_match(
        self, user: Optional[UserContext], resolver: PlaceholderResolver
    ) -> bool:
        if ROLE in self.match:
            roles = user.roles if user is not None else []
            return any(role in self.match for role in roles)
        # every entry must resolve to the same literal
        return len({resolver(m) for m in self.match}) == 1


class Rule(BaseModel):
    effect: Effect
    conditions: List[Condition] = Field(default_factory=list, alias="condition")

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    def execute(
        self, user: Optional[UserContext], resolver: PlaceholderResolver
    ) -> Optional[Effect]:
        if all(c.execute(user, resolver) for c in self.conditions):
            return self.effect
        return None


class Policy(BaseModel):
    id: str
    type: PolicyType
    actions: List[str] = Field(default_factory=list, alias="action")
    rules: List[Rule] = Field(default_factory=list, alias="rule")

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    def execute(
        self, user: Optional[UserContext], resolver: PlaceholderResolver
    ) -> str:
        for rule in self.rules:
            if rule.execute(user, resolver) != Effect.PERMIT:
                logger.debug("Policy %s denied by rule %s", self.id, rule)
                return FALSE
        if not self.actions:
            return TRUE
        return " AND ".join(resolver(action) for action in self.actions)


class PolicyEngine:
    """Evaluates all policies of a product definition for one user."""

    def __init__(
        self,
        policies: List[Policy],
        user: Optional[UserContext] = None,
        resolver: Optional[PlaceholderResolver] = None,
    ):
        self.policies = policies
        self.user = user
        self.resolver = resolver or DefaultPlaceholderResolver(user)

    def execute(self) -> str:
        """Return the row-level SQL predicate for the user."""
        results = [
            p.execute(self.user, self.resolver)
            for p in self.policies
            if p.type == PolicyType.ROW_LEVEL
        ]
        if any(r == FALSE for r in results):
            return FALSE
        if not results:
            return TRUE
        return " AND ".join(results)

    def is_permitted(self) -> bool:
        """Return True if every access policy permits the user."""
        return all(
            p.execute(self.user, self.resolver) != FALSE
            for p in self.policies
            if p.type == PolicyType.ACCESS
        )
