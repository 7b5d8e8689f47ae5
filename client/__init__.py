from .api import MessagingAPIError, MessagingClient
from .conversation_view import ConversationView

__all__ = ["ConversationView", "MessagingAPIError", "MessagingClient"]
