from datetime import datetime
from typing import List, Optional, TypedDict


class MessageDocument(TypedDict, total=False):
    _id: str
    conversation_id: str
    sender_id: str
    text: str
    created_at: datetime
    # grows by $addToSet only
    read_by: List[str]
    # client ack / idempotency key
    client_message_id: Optional[str]
