from clinicase.core.state.conversation import ConversationSnapshot, ConversationState
from clinicase.core.state.store import ConversationStore

__all__ = ["ConversationSnapshot", "ConversationState", "ConversationStore"]
