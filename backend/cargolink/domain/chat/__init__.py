"""Chat domain exports."""

from .resolver import ConversationResolver
from .service import ChatService, get_store, set_store
from .stream import MessageStream

__all__ = [
	"ChatService",
	"ConversationResolver",
	"MessageStream",
	"get_store",
	"set_store",
]
