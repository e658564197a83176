"""Companies and user profiles.

Only the model layer is re-exported here: the service depends on request admission, which in
turn depends on these models. Import ``app.business.companies.api`` for the routers.
"""

from app.business.companies.models import Company, UserProfile
from app.business.companies.plans import PLAN_REGISTRY, Plan, effective_active_limit, get_plan
from app.business.companies.schemas import (
    CompanyCapacityRead,
    CompanyCreate,
    CompanyRead,
    CompanyUpdate,
    UserProfileCreate,
    UserProfileRead,
)

__all__ = [
    "Company",
    "UserProfile",
    "PLAN_REGISTRY",
    "Plan",
    "effective_active_limit",
    "get_plan",
    "CompanyCapacityRead",
    "CompanyCreate",
    "CompanyRead",
    "CompanyUpdate",
    "UserProfileCreate",
    "UserProfileRead",
]
