"""Notification dispatch for workflow actions."""

import uuid
from typing import List, Optional

from ..core.logging import get_logger
from ..storage.models import NotificationModel
from ..storage.repositories import session_scope

logger = get_logger(__name__)


class NotificationService:
    """Writes one in-app notification row per recipient."""

    def send(self, tenant_id: str, recipients: List[str], title: str, message: str,
             notification_type: str = "system", module_type: Optional[str] = None,
             module_item_id: Optional[str] = None) -> List[str]:
        ids = []
        with session_scope("send notification", "notifications") as db:
            for user_id in recipients:
                notification_id = str(uuid.uuid4())
                db.add(NotificationModel(
                    id=notification_id,
                    tenant_id=tenant_id,
                    user_id=user_id,
                    title=title,
                    message=message,
                    type=notification_type,
                    module_type=module_type,
                    module_item_id=module_item_id,
                ))
                ids.append(notification_id)
        logger.info(f"Sent notification '{title}' to {len(ids)} recipient(s)")
        return ids
