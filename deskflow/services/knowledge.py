"""Knowledge-base article creation for workflow actions."""

import uuid
from typing import Optional

from ..core.logging import get_logger
from ..storage.models import KnowledgeArticleModel
from ..storage.repositories import session_scope

logger = get_logger(__name__)


class KnowledgeService:

    def create_article(self, tenant_id: str, title: str, content: Optional[str] = None,
                       category_id: Optional[str] = None, status: str = "draft",
                       created_by: Optional[str] = None) -> str:
        article_id = str(uuid.uuid4())
        with session_scope("create knowledge article", "knowledge_articles") as db:
            db.add(KnowledgeArticleModel(
                id=article_id,
                tenant_id=tenant_id,
                title=title,
                content=content,
                category_id=category_id,
                status=status,
                created_by=created_by,
            ))
        logger.info(f"Created knowledge article {article_id}")
        return article_id
