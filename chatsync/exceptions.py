"""
Errors raised by the chat core.

    ChatError (base)
    ├── ConversationNotFound - unknown conversation id, never retried
    ├── StoreUnavailable - transient backing-store failure, retried by callers
    └── PartialSendFailure - message persisted, summary/unread update failed
"""

from typing import Optional


class ChatError(Exception):

    default_error_code = "CHAT_ERROR"

    def __init__(self, message: str = "", error_code: Optional[str] = None) -> None:
        super().__init__(message)
        self.error_code = error_code or self.default_error_code

    def to_dict(self) -> dict:
        return {"error": self.error_code, "detail": str(self)}


class ConversationNotFound(ChatError):

    default_error_code = "CONVERSATION_NOT_FOUND"

    def __init__(self, conversation_id: str) -> None:
        super().__init__(f"Conversation {conversation_id} not found")
        self.conversation_id = conversation_id


class StoreUnavailable(ChatError):

    default_error_code = "STORE_UNAVAILABLE"


class PartialSendFailure(ChatError):
    """
    The message is durably stored and visible, but the conversation summary
    and unread counter were not updated. Callers can re-run only the summary
    step with ``ChatService.retry_summary(exc.message)``.
    """

    default_error_code = "PARTIAL_SEND_FAILURE"

    def __init__(self, message, cause: Optional[BaseException] = None) -> None:
        super().__init__(f"Message {message.id} stored but conversation summary update failed")
        self.message = message
        self.cause = cause
