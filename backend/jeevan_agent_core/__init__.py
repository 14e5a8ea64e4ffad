from .config import LLMConfig, Settings, load_settings
from .lifecycle import CONVERSATION_STATES, TERMINAL_STATES, ConversationLifecycle, LifecycleError
from .llm import LLMProvider, ModelProviderError, OpenAICompatibleProvider
from .models import ConversationResult, ModelInvalidResponse, ModelResponse, SafetyCheckResult, SuggestedIssueUpdate
from .orchestrator import ConversationOrchestrator
from .prompts import PromptBuilder, fallback_response
from .safety import SafetyValidator
from .worker import ConversationNotFound, ConversationWorker

__all__ = [
    "CONVERSATION_STATES",
    "TERMINAL_STATES",
    "ConversationLifecycle",
    "ConversationNotFound",
    "ConversationOrchestrator",
    "ConversationResult",
    "ConversationWorker",
    "LLMConfig",
    "LLMProvider",
    "LifecycleError",
    "ModelInvalidResponse",
    "ModelProviderError",
    "ModelResponse",
    "OpenAICompatibleProvider",
    "PromptBuilder",
    "SafetyCheckResult",
    "SafetyValidator",
    "Settings",
    "SuggestedIssueUpdate",
    "fallback_response",
    "load_settings",
]
