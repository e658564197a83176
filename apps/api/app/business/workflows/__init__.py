from app.business.workflows.api import router
from app.business.workflows.events import EVENT_TRIGGER_TYPES, WorkflowEvent
from app.business.workflows.executor import ActionExecutor, action_executor, render_template
from app.business.workflows.matcher import RuleMatcher, rule_matcher
from app.business.workflows.models import WorkflowExecution, WorkflowRule, WorkflowTriggerMarker
from app.business.workflows.service import (
    WorkflowAutomationService,
    WorkflowRuleService,
    workflow_automation_service,
    workflow_rule_service,
)
from app.business.workflows.webhook import WebhookClient, sign_payload, verify_signature

__all__ = [
    "router",
    "EVENT_TRIGGER_TYPES",
    "WorkflowEvent",
    "ActionExecutor",
    "action_executor",
    "render_template",
    "RuleMatcher",
    "rule_matcher",
    "WorkflowExecution",
    "WorkflowRule",
    "WorkflowTriggerMarker",
    "WorkflowAutomationService",
    "WorkflowRuleService",
    "workflow_automation_service",
    "workflow_rule_service",
    "WebhookClient",
    "sign_payload",
    "verify_signature",
]
