"""
User Model.

The acting principal as supplied by the identity provider.  The core
trusts ``id`` and ``role`` verbatim; authentication happens upstream.
"""

from __future__ import annotations

from typing import Optional

from pydantic import BaseModel

from approvals.models.enums import UserRole


class User(BaseModel):
    """Represents an authenticated user acting on the workflow."""

    id: str
    role: UserRole
    email: Optional[str] = None
    full_name: Optional[str] = None
    college: Optional[str] = None
    department: Optional[str] = None

    model_config = {"from_attributes": True, "frozen": True}
