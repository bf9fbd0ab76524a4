"""Ticket mutations performed by workflow actions."""

import uuid
from typing import Any, Dict, Optional

from ..core.exceptions import RecordNotFoundError
from ..core.logging import get_logger
from ..storage.models import TicketModel
from ..storage.repositories import session_scope

logger = get_logger(__name__)

UPDATABLE_FIELDS = ("status", "priority", "category", "description")


class TicketService:
    """Creates, updates and assigns tickets in the ``tickets`` table."""

    def get_ticket(self, ticket_id: str) -> Optional[Dict[str, Any]]:
        with session_scope("load ticket", "tickets") as db:
            ticket = db.query(TicketModel).filter(TicketModel.id == ticket_id).first()
            if ticket is None:
                return None
            return {
                "id": ticket.id,
                "tenant_id": ticket.tenant_id,
                "title": ticket.title,
                "description": ticket.description,
                "status": ticket.status,
                "priority": ticket.priority,
                "category": ticket.category,
                "assigned_to": ticket.assigned_to,
                "created_by": ticket.created_by,
            }

    def update_ticket(self, ticket_id: str, updates: Dict[str, Any]) -> None:
        with session_scope("update ticket", "tickets") as db:
            ticket = db.query(TicketModel).filter(TicketModel.id == ticket_id).first()
            if ticket is None:
                raise RecordNotFoundError("Ticket", ticket_id)
            for key in UPDATABLE_FIELDS:
                if key in updates:
                    setattr(ticket, key, updates[key])
        logger.info(f"Updated ticket {ticket_id}: {sorted(updates)}")

    def create_ticket(self, tenant_id: str, title: str, description: Optional[str] = None,
                      status: str = "open", priority: str = "medium",
                      category: Optional[str] = None, assigned_to: Optional[str] = None,
                      created_by: Optional[str] = None) -> str:
        ticket_id = str(uuid.uuid4())
        with session_scope("create ticket", "tickets") as db:
            db.add(TicketModel(
                id=ticket_id,
                tenant_id=tenant_id,
                title=title,
                description=description,
                status=status,
                priority=priority,
                category=category,
                assigned_to=assigned_to,
                created_by=created_by,
            ))
        logger.info(f"Created ticket {ticket_id}")
        return ticket_id

    def assign_ticket(self, ticket_id: str, assignee_id: str) -> None:
        with session_scope("assign ticket", "tickets") as db:
            ticket = db.query(TicketModel).filter(TicketModel.id == ticket_id).first()
            if ticket is None:
                raise RecordNotFoundError("Ticket", ticket_id)
            ticket.assigned_to = assignee_id
        logger.info(f"Assigned ticket {ticket_id} to {assignee_id}")
