from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import select
from sqlalchemy.orm import Session

from app.business.requests.models import Request, RequestComment
from app.platform.repository import BaseRepository


class RequestRepository(BaseRepository):
    resource = "requests.request"
    model = Request

    def list_open_with_due_date(self, session: Session) -> list[Request]:
        return list(
            session.scalars(
                select(Request)
                .where(Request.status != "done", Request.due_date.is_not(None), Request.archived_at.is_(None))
                .order_by(Request.due_date.asc())
            )
        )

    def list_archivable(self, session: Session, completed_before: datetime) -> list[Request]:
        return list(
            session.scalars(
                select(Request).where(
                    Request.status == "done",
                    Request.archived_at.is_(None),
                    Request.completed_at.is_not(None),
                    Request.completed_at < completed_before,
                )
            )
        )


class RequestCommentRepository(BaseRepository):
    resource = "requests.comment"
    model = RequestComment

    def list_for_request(self, session: Session, request_id: uuid.UUID, *, include_internal: bool) -> list[RequestComment]:
        query = select(RequestComment).where(RequestComment.request_id == request_id)
        if not include_internal:
            query = query.where(RequestComment.is_internal.is_(False))
        return list(session.scalars(query.order_by(RequestComment.created_at.asc())))
