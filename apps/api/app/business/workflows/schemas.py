from __future__ import annotations

from datetime import datetime
from typing import Annotated, Any, Literal
from uuid import UUID

from pydantic import AnyHttpUrl, BaseModel, ConfigDict, Field, TypeAdapter, model_validator

from app.business.requests.schemas import RequestPriority, RequestStatus


TriggerType = Literal["status_change", "due_date_approaching", "comment_added", "assignment_change", "sla_breach"]
ExecutionStatus = Literal["success", "failed", "skipped"]


class StatusChangeCondition(BaseModel):
    type: Literal["status_change"]
    from_status: RequestStatus | None = None
    to_status: RequestStatus | None = None


class DueDateApproachingCondition(BaseModel):
    type: Literal["due_date_approaching"]
    hours_before: int = Field(default=24, ge=1)


class CommentAddedCondition(BaseModel):
    type: Literal["comment_added"]
    is_internal: bool | None = None


class AssignmentChangeCondition(BaseModel):
    type: Literal["assignment_change"]
    to_user_id: UUID | None = None


class SlaBreachCondition(BaseModel):
    type: Literal["sla_breach"]


TriggerCondition = Annotated[
    StatusChangeCondition
    | DueDateApproachingCondition
    | CommentAddedCondition
    | AssignmentChangeCondition
    | SlaBreachCondition,
    Field(discriminator="type"),
]


class NotifyAction(BaseModel):
    type: Literal["notify"]
    message: str = Field(min_length=1)
    title: str | None = None
    recipient_user_ids: list[UUID] = Field(default_factory=list)


class AssignAction(BaseModel):
    type: Literal["assign"]
    user_id: UUID | None


class ChangeStatusAction(BaseModel):
    type: Literal["change_status"]
    status: RequestStatus


class ChangePriorityAction(BaseModel):
    type: Literal["change_priority"]
    priority: RequestPriority


class SendEmailAction(BaseModel):
    type: Literal["send_email"]
    subject: str | None = None
    message: str | None = None
    recipient_user_ids: list[UUID] = Field(default_factory=list)


class WebhookAction(BaseModel):
    type: Literal["webhook"]
    url: AnyHttpUrl
    secret: str | None = None
    headers: dict[str, str] = Field(default_factory=dict)


WorkflowAction = Annotated[
    NotifyAction | AssignAction | ChangeStatusAction | ChangePriorityAction | SendEmailAction | WebhookAction,
    Field(discriminator="type"),
]

trigger_condition_adapter = TypeAdapter(TriggerCondition)
workflow_action_list_adapter = TypeAdapter(list[WorkflowAction])


def normalize_trigger_conditions(trigger_type: str, raw: dict[str, Any] | None) -> dict[str, Any]:
    conditions = {"type": trigger_type, **(raw or {})}
    if conditions["type"] != trigger_type:
        raise ValueError("trigger_conditions.type must match trigger_type")
    return trigger_condition_adapter.validate_python(conditions).model_dump(mode="json")


def normalize_actions(raw: list[dict[str, Any]]) -> list[dict[str, Any]]:
    if not raw:
        raise ValueError("at least one action is required")
    return [action.model_dump(mode="json") for action in workflow_action_list_adapter.validate_python(raw)]


class WorkflowRuleCreate(BaseModel):
    name: str = Field(min_length=1, max_length=255)
    description: str | None = None
    company_id: UUID | None = None
    trigger_type: TriggerType
    trigger_conditions: dict[str, Any] = Field(default_factory=dict)
    actions: list[dict[str, Any]]
    is_active: bool = True

    @model_validator(mode="after")
    def validate_rule_structure(self) -> "WorkflowRuleCreate":
        self.trigger_conditions = normalize_trigger_conditions(self.trigger_type, self.trigger_conditions)
        self.actions = normalize_actions(self.actions)
        return self


class WorkflowRuleUpdate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: str | None = Field(default=None, min_length=1, max_length=255)
    description: str | None = None
    trigger_type: TriggerType | None = None
    trigger_conditions: dict[str, Any] | None = None
    actions: list[dict[str, Any]] | None = None
    is_active: bool | None = None

    @model_validator(mode="after")
    def validate_rule_structure(self) -> "WorkflowRuleUpdate":
        if self.trigger_type is not None:
            self.trigger_conditions = normalize_trigger_conditions(self.trigger_type, self.trigger_conditions)
        if self.actions is not None:
            self.actions = normalize_actions(self.actions)
        return self


class WorkflowRuleRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    company_id: UUID | None
    name: str
    description: str | None
    trigger_type: TriggerType | str
    trigger_conditions: dict[str, Any]
    actions: list[dict[str, Any]]
    is_active: bool
    execution_count: int
    last_executed_at: datetime | None
    created_by: str
    created_at: datetime
    updated_at: datetime
    deleted_at: datetime | None


class WorkflowExecutionRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    rule_id: UUID
    event_id: str
    request_id: UUID | None
    trigger_type: str
    status: ExecutionStatus | str
    error: str | None
    action_results: list[dict[str, Any]]
    duration_ms: int | None
    correlation_id: str | None
    created_at: datetime
