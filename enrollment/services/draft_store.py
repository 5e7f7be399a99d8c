"""
Durable store for unconfirmed student registrations.

Drafts live in their own table keyed by ``student-<uuid>`` so any API
instance can pick up a checkout that another instance started.
"""
from __future__ import annotations

import logging
import uuid
from typing import Optional

from sqlalchemy.orm import Session

from enrollment.core.exceptions import NotFoundError
from enrollment.core.security import hash_password
from enrollment.models import Draft, Parent
from enrollment.schemas.registration import DraftCreate

logger = logging.getLogger(__name__)

PAYMENT_PATH = "/parent/dashboard/complete-student-registration/{draft_id}"


def new_draft_id() -> str:
    return f"student-{uuid.uuid4()}"


class DraftStore:
    def __init__(self, db: Session):
        self.db = db

    def create(self, parent_id: uuid.UUID, data: DraftCreate) -> Draft:
        if self.db.get(Parent, parent_id) is None:
            raise NotFoundError("Parent not found")

        draft_id = new_draft_id()
        draft = Draft(
            id=draft_id,
            parent_id=parent_id,
            first_name=data.first_name.strip(),
            last_name=data.last_name.strip(),
            age=data.age,
            grade=data.grade,
            password_hash=hash_password(data.password),
            image_url=data.image_url or "",
            payment_url=PAYMENT_PATH.format(draft_id=draft_id),
        )
        self.db.add(draft)
        self.db.commit()
        logger.info("Draft %s created for parent %s", draft_id, parent_id)
        return draft

    def get(self, draft_id: str, parent_id: Optional[uuid.UUID] = None) -> Draft:
        draft = self.db.get(Draft, draft_id)
        if draft is None or (parent_id is not None and draft.parent_id != parent_id):
            raise NotFoundError("Temporary student data not found")
        return draft
