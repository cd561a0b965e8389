import os
from typing import Optional

from .errors import Unauthorized, ValidationError
from .models import Principal, ROLES

USER_ENV = "FREIGHTCTL_USER"
ROLE_ENV = "FREIGHTCTL_ROLE"


class IdentityOracle:
    """
    Resolves the acting user. The CLI passes --as/--role through here;
    anything else (a web layer, a test) can construct Principals directly.
    """

    def __init__(self, user_id: Optional[str] = None, role: Optional[str] = None):
        self.user_id = user_id
        self.role = role

    def current_user(self) -> Principal:
        user_id = (self.user_id or os.environ.get(USER_ENV) or "").strip()
        role = (self.role or os.environ.get(ROLE_ENV) or "").strip().lower()
        if not user_id:
            raise Unauthorized(f"No user given. Pass --as USER or set {USER_ENV}.")
        if not role:
            raise Unauthorized(f"No role given. Pass --role ROLE or set {ROLE_ENV}.")
        if role not in ROLES:
            raise ValidationError(f"Unknown role {role!r}. Allowed: {', '.join(ROLES)}")
        return Principal(id=user_id, role=role)
