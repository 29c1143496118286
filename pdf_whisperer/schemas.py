
from datetime import datetime
from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel
from typing import List, Literal, Optional
from uuid import UUID

from .models import UploadStatus

class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, from_attributes=True)

class SendMessageRequest(CamelModel):
    file_id: str = Field(min_length=1)
    message: str = Field(min_length=1)

    @field_validator("message")
    @classmethod
    def _not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("message must not be blank")
        return v

class UploadCompleteRequest(CamelModel):
    file_key: str = Field(min_length=1)
    file_name: str = Field(min_length=1)
    owner_user_id: str = Field(min_length=1)

class FileOut(CamelModel):
    id: UUID
    name: str
    key: str
    url: str
    upload_status: UploadStatus
    created_at: datetime

class UploadStatusOut(BaseModel):
    status: Literal["PENDING", "PROCESSING", "SUCCESS", "FAILED"]

class MessageOut(CamelModel):
    id: int
    text: str
    is_user_message: bool
    created_at: datetime

class MessagesPage(CamelModel):
    messages: List[MessageOut]
    next_cursor: Optional[int] = None
