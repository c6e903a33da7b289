"""Field-level permission classes.

Every non-public field declares ``permission_classes=[IsAuthenticated]``.
The auth middleware already rejects anonymous calls to those fields;
this is the second check, evaluated per resolver by strawberry.
"""

from typing import Any

from strawberry.permission import BasePermission
from strawberry.types import Info

from crm.errors import Unauthenticated


class IsAuthenticated(BasePermission):
    message = Unauthenticated.default_message
    error_extensions = {"code": Unauthenticated.code}

    def has_permission(self, source: Any, info: Info, **kwargs: Any) -> bool:
        return info.context.identity is not None
