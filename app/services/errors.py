class ConversationStateNotFoundError(LookupError):
    def __init__(self, conversation_id: str) -> None:
        super().__init__(f"Conversation '{conversation_id}' has no stored state or events")
        self.conversation_id = conversation_id


class SupportDataUnavailableError(LookupError):
    def __init__(self) -> None:
        super().__init__("No support data found")


class InvalidWebhookPayloadError(ValueError):
    def __init__(self, reason: str) -> None:
        super().__init__(f"Invalid webhook payload: {reason}")
        self.reason = reason


class WebhookSignatureError(PermissionError):
    def __init__(self, reason: str) -> None:
        super().__init__(reason)
        self.reason = reason


class EscalationDetectionDisabledError(RuntimeError):
    def __init__(self) -> None:
        super().__init__("Escalation detection is disabled: no bot assignee ids configured")
