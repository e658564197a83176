from __future__ import annotations

from contextvars import ContextVar, Token

correlation_id_var: ContextVar[str | None] = ContextVar("correlation_id", default=None)
workflow_depth_var: ContextVar[int | None] = ContextVar("workflow_depth", default=None)
workflow_origin_rules_var: ContextVar[tuple[str, ...]] = ContextVar("workflow_origin_rules", default=())


def set_correlation_id(value: str | None) -> Token[str | None]:
    return correlation_id_var.set(value)


def reset_correlation_id(token: Token[str | None]) -> None:
    correlation_id_var.reset(token)


def get_correlation_id() -> str | None:
    return correlation_id_var.get()


def set_workflow_depth(value: int | None) -> Token[int | None]:
    return workflow_depth_var.set(value)


def reset_workflow_depth(token: Token[int | None]) -> None:
    workflow_depth_var.reset(token)


def get_workflow_depth() -> int | None:
    return workflow_depth_var.get()


def push_workflow_origin_rule(rule_id: str) -> Token[tuple[str, ...]]:
    """Mark ``rule_id`` as the source of any event published until the token is reset."""
    current = workflow_origin_rules_var.get()
    if rule_id in current:
        return workflow_origin_rules_var.set(current)
    return workflow_origin_rules_var.set((*current, rule_id))


def reset_workflow_origin_rules(token: Token[tuple[str, ...]]) -> None:
    workflow_origin_rules_var.reset(token)


def get_workflow_origin_rules() -> tuple[str, ...]:
    return workflow_origin_rules_var.get()


def get_log_context() -> dict[str, str | None]:
    return {"correlation_id": get_correlation_id()}
