from app.business.requests.admission import (
    AdmissionController,
    AdmissionDecision,
    CompanyLockRegistry,
    admission_controller,
    company_locks,
)
from app.business.requests.api import router
from app.business.requests.models import Request, RequestComment
from app.business.requests.service import VALID_REQUEST_TRANSITIONS, RequestService, request_service
from app.business.requests.sla import calculate_sla_status

__all__ = [
    "AdmissionController",
    "AdmissionDecision",
    "CompanyLockRegistry",
    "admission_controller",
    "company_locks",
    "router",
    "Request",
    "RequestComment",
    "VALID_REQUEST_TRANSITIONS",
    "RequestService",
    "request_service",
    "calculate_sla_status",
]
