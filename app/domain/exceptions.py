class StaleConversationStateError(RuntimeError):
    def __init__(self, conversation_id: str, expected_version: int | None) -> None:
        expected = "none" if expected_version is None else str(expected_version)
        super().__init__(
            f"Conversation state '{conversation_id}' changed concurrently "
            f"(expected version {expected})."
        )
        self.conversation_id = conversation_id
        self.expected_version = expected_version
