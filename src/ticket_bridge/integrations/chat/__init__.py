"""Platform-agnostic chat contracts (adapter layer)."""

from .dispatcher import DispatchContext, DispatchResult, SerialDispatcher
from .media import MediaKind, classify_media
from .models import Attachment, ContactMessage, Direction, OutgoingMessage, TicketMessage
from .transport import ContactTransport, TicketTransport

__all__ = [
    "Attachment",
    "ContactMessage",
    "ContactTransport",
    "Direction",
    "DispatchContext",
    "DispatchResult",
    "MediaKind",
    "OutgoingMessage",
    "SerialDispatcher",
    "TicketMessage",
    "TicketTransport",
    "classify_media",
]
