"""Microsoft Graph access for the RFQ reply tracker.

- GraphClient: HTTP client with retry, backoff and rate limiting
- MessageManager / FolderManager: raw-dict message and folder operations
- MailGateway: the async interface the engine depends on
- GraphMailGateway: MailGateway over the managers above

Usage:
    from rfq_tracker.auth import GraphAuth
    from rfq_tracker.graph import FolderManager, GraphClient, GraphMailGateway, MessageManager

    client = GraphClient(GraphAuth(client_id, tenant_id, scopes, cache_path))
    gateway = GraphMailGateway(MessageManager(client), FolderManager(client))
    folders = await gateway.list_folders()
"""

from rfq_tracker.graph.client import GraphClient
from rfq_tracker.graph.folders import FolderManager
from rfq_tracker.graph.gateway import GraphMailGateway, MailGateway
from rfq_tracker.graph.messages import MessageManager
from rfq_tracker.graph.models import Folder, Message, SentMessage

__all__ = [
    "GraphClient",
    "FolderManager",
    "MessageManager",
    "MailGateway",
    "GraphMailGateway",
    "Folder",
    "Message",
    "SentMessage",
]
