from __future__ import annotations


CONVERSATION_STATES = {"received", "context_retrieved", "model_called", "validated", "persisted", "failed"}
TERMINAL_STATES = {"persisted", "failed"}


class LifecycleError(Exception):
    pass


class ConversationLifecycle:
    _TRANSITIONS = {
        "received": {"context_retrieved", "failed"},
        "context_retrieved": {"model_called", "failed"},
        "model_called": {"validated", "failed"},
        "validated": {"persisted", "failed"},
        "persisted": set(),
        "failed": set(),
    }

    def __init__(self, conversation_ref: str) -> None:
        self.conversation_ref = conversation_ref
        self.history = ["received"]

    @property
    def state(self) -> str:
        return self.history[-1]

    @property
    def finished(self) -> bool:
        return self.state in TERMINAL_STATES

    def transition(self, next_state: str) -> list[str]:
        allowed_next = self._TRANSITIONS.get(self.state, set())
        if next_state not in allowed_next:
            raise LifecycleError(f"Invalid transition: {self.state} -> {next_state}")
        self.history.append(next_state)
        return list(self.history)
