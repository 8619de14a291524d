from __future__ import annotations

from typing import Any, Dict, List, Optional
from pydantic import BaseModel, Field, ConfigDict


class UserContext(BaseModel):
    """
    Normalized identity of the caller, as seen by the policy engine.

    - roles: authorities granted to the user
    - active_caseload: the caseload the user is currently working in
    - caseloads: every caseload the user has access to
    """

    username: Optional[str] = Field(None, description="Human-readable username")

    roles: List[str] = Field(default_factory=list)
    active_caseload: Optional[str] = None
    caseloads: List[str] = Field(default_factory=list)

    # Keep raw JWT claims for auditing / future extensions
    claims: Dict[str, Any] = Field(default_factory=dict)

    token: Optional[str] = Field(default=None, exclude=True)

    model_config = ConfigDict(
        frozen=True,
        extra="ignore",
    )
