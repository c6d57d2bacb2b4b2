"""
Orchestrator — simulated callers for live agent testing.

Modules:
- dialogue: Language catalogue, DialogueStrategy and DialogueSession
- runner: ConversationRunner turn loop, recording callbacks and analytics
"""
from orchestrator.dialogue import DialogueSession, DialogueStrategy, LANGUAGES
from orchestrator.runner import ConversationRunner, NO_RESPONSE_SENTINEL

__all__ = ["DialogueSession", "DialogueStrategy", "LANGUAGES",
           "ConversationRunner", "NO_RESPONSE_SENTINEL"]
