"""Conversation sessions and the delegates the engine pushes output through.

``sessions`` depends on ``almondcloud.backend``; import it directly.
"""

from almondcloud.assistant.delegates import AssistantDelegate, ResultsDelegate
from almondcloud.assistant.proxies import AssistantProxy, ConversationHandle

__all__ = ["AssistantDelegate", "AssistantProxy", "ConversationHandle", "ResultsDelegate"]
