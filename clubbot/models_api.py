from __future__ import annotations
from pydantic import BaseModel, ConfigDict, Field
from typing import Optional

# Subset of the Telegram Bot API Update object; unknown fields are ignored.

class TgModel(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

class User(TgModel):
    id: int
    is_bot: bool = False
    username: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None

class Chat(TgModel):
    id: int
    type: str = "private"

class Message(TgModel):
    message_id: int
    from_user: Optional[User] = Field(default=None, alias="from")
    chat: Chat
    date: int = 0
    text: Optional[str] = None

class CallbackQuery(TgModel):
    id: str
    from_user: User = Field(alias="from")
    message: Optional[Message] = None
    data: Optional[str] = None

class Update(TgModel):
    update_id: int
    message: Optional[Message] = None
    callback_query: Optional[CallbackQuery] = None
