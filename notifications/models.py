from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence


@dataclass(slots=True)
class Recipient:
    """A parish member and the channels they can be reached on."""

    user_id: str
    name: str
    email: Optional[str] = None
    discord_webhook: Optional[str] = None
    channels: Sequence[str] = field(default_factory=list)

    @property
    def reachable(self) -> bool:
        return bool(self.email or self.discord_webhook)


@dataclass(slots=True)
class NotificationMessage:
    """Rendered digest or reminder, ready for any channel."""

    subject: str
    body_text: str
    body_html: Optional[str] = None
    # "digest", "event_reminder" or "general"
    category: str = "general"
    metadata: Dict[str, str] = field(default_factory=dict)


@dataclass(slots=True)
class NotificationJob:
    """Everything one member gets from one collector run in one parish."""

    recipient: Recipient
    parish_id: Optional[str] = None
    messages: List[NotificationMessage] = field(default_factory=list)

    def add(self, message: NotificationMessage) -> None:
        self.messages.append(message)

    @property
    def categories(self) -> List[str]:
        return sorted({message.category for message in self.messages})
