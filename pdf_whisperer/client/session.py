"""Chat session that shows a question and its streamed answer before the server confirms them.

One turn moves through IDLE -> PENDING -> STREAMING -> SETTLED, or ends in
ROLLED_BACK when the request fails. Only one turn may be in flight.
"""
import enum
import uuid
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Union

import httpx

from ..config import settings
from ..logger import get_logger

log = get_logger(__name__)

AI_RESPONSE_ID = "ai-response"


class ChatBusyError(Exception):
    """Предыдущий вопрос еще не получил ответ"""
    pass


class ChatTransportError(Exception):
    """Сервер ответил ошибкой или соединение оборвалось"""
    pass


@dataclass(frozen=True)
class PendingId:
    local_id: str


@dataclass(frozen=True)
class ConfirmedId:
    server_id: int


MessageId = Union[PendingId, ConfirmedId]


@dataclass(frozen=True)
class ChatMessage:
    id: MessageId
    text: str
    is_user_message: bool
    created_at: datetime

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> "ChatMessage":
        return cls(
            id=ConfirmedId(int(data["id"])),
            text=data["text"],
            is_user_message=bool(data["isUserMessage"]),
            created_at=datetime.fromisoformat(data["createdAt"].replace("Z", "+00:00")),
        )

    @property
    def is_pending(self) -> bool:
        return isinstance(self.id, PendingId)


class ChatState(str, enum.Enum):
    IDLE = "IDLE"
    PENDING = "PENDING"
    STREAMING = "STREAMING"
    SETTLED = "SETTLED"
    ROLLED_BACK = "ROLLED_BACK"


IN_FLIGHT = (ChatState.PENDING, ChatState.STREAMING)

Notify = Callable[[str, str], None]


def _now() -> datetime:
    return datetime.now(timezone.utc)


class ChatSession:
    def __init__(
        self,
        client: httpx.AsyncClient,
        file_id: str,
        *,
        limit: Optional[int] = None,
        notify: Optional[Notify] = None,
    ):
        self.client = client
        self.file_id = str(file_id)
        self.limit = limit or settings.INFINITE_QUERY_LIMIT
        self.notify = notify
        # Newest first, like the paginated API
        self.messages: List[ChatMessage] = []
        self.next_cursor: Optional[int] = None
        self.draft = ""
        self.is_loading = False
        self.state = ChatState.IDLE

    async def _fetch_page(self, cursor: Optional[int] = None) -> Dict[str, Any]:
        params: Dict[str, Any] = {"limit": self.limit}
        if cursor is not None:
            params["cursor"] = cursor
        resp = await self.client.get(f"/api/files/{self.file_id}/messages", params=params)
        resp.raise_for_status()
        return resp.json()

    async def load(self) -> List[ChatMessage]:
        page = await self._fetch_page()
        self.messages = [ChatMessage.from_api(m) for m in page["messages"]]
        self.next_cursor = page.get("nextCursor")
        return self.messages

    async def load_more(self) -> List[ChatMessage]:
        if self.next_cursor is None:
            return self.messages
        page = await self._fetch_page(self.next_cursor)
        self.messages = self.messages + [ChatMessage.from_api(m) for m in page["messages"]]
        self.next_cursor = page.get("nextCursor")
        return self.messages

    def _apply_stream_text(self, text: str) -> None:
        placeholder = PendingId(AI_RESPONSE_ID)
        for i, m in enumerate(self.messages):
            if m.id == placeholder:
                self.messages[i] = replace(m, text=text)
                return
        self.messages.insert(
            0, ChatMessage(id=placeholder, text=text, is_user_message=False, created_at=_now())
        )

    def _rollback(self, snapshot: List[ChatMessage], backup: str, error: Exception) -> None:
        log.warning("Chat turn rolled back | file_id=%s | error=%s", self.file_id, error)
        self.messages = snapshot
        self.draft = backup
        self.is_loading = False
        self.state = ChatState.ROLLED_BACK
        if self.notify is not None:
            self.notify(
                "There was a problem sending this message",
                "Please refresh this page and try again.",
            )

    async def send(self, text: Optional[str] = None) -> ChatState:
        """Run one question/answer turn and return the state it ended in."""
        if self.state in IN_FLIGHT:
            raise ChatBusyError("A message is already being answered")
        message = self.draft if text is None else text
        if not message.strip():
            return self.state

        snapshot = list(self.messages)
        backup = message
        self.draft = ""
        self.messages.insert(
            0,
            ChatMessage(id=PendingId(str(uuid.uuid4())), text=message, is_user_message=True, created_at=_now()),
        )
        self.is_loading = True
        self.state = ChatState.PENDING

        try:
            async with self.client.stream(
                "POST", "/api/message", json={"fileId": self.file_id, "message": message}
            ) as resp:
                if resp.is_error:
                    await resp.aread()
                    raise ChatTransportError(f"Failed to send message: {resp.status_code} {resp.text}")
                self.is_loading = False
                answer = ""
                async for chunk in resp.aiter_text():
                    if not chunk:
                        continue
                    answer += chunk
                    self._apply_stream_text(answer)
                    self.state = ChatState.STREAMING
        except (httpx.HTTPError, ChatTransportError) as e:
            self._rollback(snapshot, backup, e)
            return self.state

        self.is_loading = False
        self.state = ChatState.SETTLED
        try:
            await self.load()
        except httpx.HTTPError as e:
            log.warning("Could not refresh messages after answer | file_id=%s | error=%s", self.file_id, e)
        return self.state
