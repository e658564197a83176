from __future__ import annotations

import uuid

from fastapi import APIRouter, Depends, Query, Response, status
from sqlalchemy.orm import Session

from app.api.deps import get_auth_context
from app.business.workflows.schemas import (
    TriggerType,
    WorkflowExecutionRead,
    WorkflowRuleCreate,
    WorkflowRuleRead,
    WorkflowRuleUpdate,
)
from app.business.workflows.service import workflow_rule_service
from app.core.database import get_db
from app.core.rbac import require_permissions
from app.platform.security import AuthContext


router = APIRouter(
    prefix="/workflows",
    tags=["workflows"],
    dependencies=[Depends(require_permissions("workflows.manage"))],
)


@router.post("", response_model=WorkflowRuleRead, status_code=status.HTTP_201_CREATED)
def create_rule(
    payload: WorkflowRuleCreate,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
) -> WorkflowRuleRead:
    return workflow_rule_service.create_rule(db, ctx, payload)


@router.get("", response_model=list[WorkflowRuleRead])
def list_rules(
    company_id: uuid.UUID | None = Query(default=None),
    trigger_type: TriggerType | None = Query(default=None),
    include_inactive: bool = Query(default=True),
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
) -> list[WorkflowRuleRead]:
    return workflow_rule_service.list_rules(
        db,
        ctx,
        company_id=company_id,
        trigger_type=trigger_type,
        include_inactive=include_inactive,
    )


@router.get("/{rule_id}", response_model=WorkflowRuleRead)
def get_rule(
    rule_id: uuid.UUID,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
) -> WorkflowRuleRead:
    return workflow_rule_service.get_rule(db, ctx, rule_id)


@router.patch("/{rule_id}", response_model=WorkflowRuleRead)
def update_rule(
    rule_id: uuid.UUID,
    payload: WorkflowRuleUpdate,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
) -> WorkflowRuleRead:
    return workflow_rule_service.update_rule(db, ctx, rule_id, payload)


@router.delete("/{rule_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_rule(
    rule_id: uuid.UUID,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
) -> Response:
    workflow_rule_service.delete_rule(db, ctx, rule_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get("/{rule_id}/executions", response_model=list[WorkflowExecutionRead])
def list_executions(
    rule_id: uuid.UUID,
    limit: int = Query(default=50, ge=1, le=200),
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
) -> list[WorkflowExecutionRead]:
    return workflow_rule_service.list_executions(db, ctx, rule_id, limit=limit)
