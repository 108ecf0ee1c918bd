# chatprojects/orchestration/context_builder.py
from __future__ import annotations

from typing import Any, Dict, List, Optional

from chatprojects.storage.repo import get_messages_for_api


def build_history(chat_id: int, limit: int, images: Optional[List[Dict[str, str]]] = None) -> List[Dict[str, Any]]:
    """Recent window of the chat, oldest-first, ready for a provider adapter.

    Instructions travel in the completion options, so stored system rows are left out.
    Images of the current turn ride on the last user message.
    """
    messages = get_messages_for_api(chat_id, limit)
    # Vendors expect the conversation to open with a user turn
    while messages and messages[0]["role"] != "user":
        messages.pop(0)
    if images:
        for m in reversed(messages):
            if m["role"] == "user":
                m["images"] = list(images)
                break
    return messages
