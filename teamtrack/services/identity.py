"""Identity lookups used to denormalize user data into views and audit entries."""

import logging
from typing import Any, Dict, Iterable, Optional

from sqlalchemy.orm import Session

from teamtrack import models

logger = logging.getLogger(__name__)


def summarize_user(user: Optional[models.User]) -> Optional[Dict[str, Any]]:
    """Project a user row to {id, username, email, avatar_url}."""
    if user is None:
        return None
    return {
        "id": user.id,
        "username": user.username,
        "email": user.email,
        "avatar_url": user.avatar_url or "",
    }


class IdentityService:
    """Read-only access to user identity rows."""

    def __init__(self, db: Session) -> None:
        self.db = db

    def get_user(self, user_id: Optional[int]) -> Optional[models.User]:
        if user_id is None:
            return None
        return self.db.query(models.User).filter(models.User.id == user_id).first()

    def snapshot(self, user_id: Optional[int]) -> Dict[str, Any]:
        """
        Build the `modified_by` snapshot stored with activity entries.

        Unknown users still produce a snapshot (with empty strings) so that
        logging never fails because of a missing identity row.
        """
        user = self.get_user(user_id)
        if user is None:
            logger.debug(f"No identity row for user {user_id}, using empty snapshot")
            return {"id": user_id, "username": "", "email": "", "avatar_url": ""}
        return summarize_user(user)

    def users_by_id(self, user_ids: Iterable[Optional[int]]) -> Dict[int, models.User]:
        """Batch-fetch users for a set of ids (None entries are ignored)."""
        ids = {user_id for user_id in user_ids if user_id is not None}
        if not ids:
            return {}
        users = self.db.query(models.User).filter(models.User.id.in_(ids)).all()
        return {user.id: user for user in users}
