from app.platform.security.context import AuthContext
from app.platform.security.rls import apply_company_scope, can_access_company

__all__ = [
    "AuthContext",
    "apply_company_scope",
    "can_access_company",
]
