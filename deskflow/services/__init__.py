"""Domain services mutated by workflow actions."""

from .http_client import HttpClient, HttpResponse
from .knowledge import KnowledgeService
from .notifications import NotificationService
from .tickets import TicketService

__all__ = [
    "HttpClient",
    "HttpResponse",
    "KnowledgeService",
    "NotificationService",
    "TicketService",
]
