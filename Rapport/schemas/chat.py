from datetime import datetime
from typing import Annotated, Any, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

# Wire contract limits
MAX_TEXT_CHARS = 100_000
MAX_CONTENT_BLOCKS = 20
MAX_IMAGE_BASE64_CHARS = 5_000_000
MAX_HISTORY_MESSAGES = 100
MAX_OUTPUT_TOKENS = 8192
MAX_TITLE_CHARS = 200


# Base for camelCase JSON bodies (maxTokens, displayName, ...) that still accept snake_case
class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")


# ---- content blocks (provider block format, snake_case on the wire) ----

class TextBlock(BaseModel):
    type: Literal["text"]
    text: str = Field(min_length=1, max_length=MAX_TEXT_CHARS)


class ImageSource(BaseModel):
    type: Literal["base64"]
    media_type: Literal["image/jpeg", "image/png", "image/gif", "image/webp"]
    data: str = Field(max_length=MAX_IMAGE_BASE64_CHARS)


class ImageBlock(BaseModel):
    type: Literal["image"]
    source: ImageSource


ContentBlock = Annotated[Union[TextBlock, ImageBlock], Field(discriminator="type")]

MessageContent = Union[
    Annotated[str, Field(min_length=1, max_length=MAX_TEXT_CHARS)],
    Annotated[List[ContentBlock], Field(min_length=1, max_length=MAX_CONTENT_BLOCKS)],
]


class ChatTurn(BaseModel):
    role: Literal["user", "assistant"]
    content: MessageContent


# ---- CRM context snapshot (request-scoped, rendered into the system prompt) ----

class AiContextPerson(CamelModel):
    id: Optional[str] = None
    display_name: Optional[str] = None
    relationship_type: Optional[str] = None
    notes: Optional[str] = None


class AiContextPreferences(CamelModel):
    likes: Optional[List[str]] = None
    dislikes: Optional[List[str]] = None


class AiContextEvent(CamelModel):
    title: str
    date: Optional[str] = None
    type: Optional[str] = None


class AiContextGesture(CamelModel):
    title: str
    status: Optional[str] = None
    due_at: Optional[str] = None


TaskHintValue = Union[bool, int, float, str, None]


class AiContext(CamelModel):
    person: Optional[AiContextPerson] = None
    preferences: Optional[AiContextPreferences] = None
    upcoming_events: Optional[List[AiContextEvent]] = None
    recent_gestures: Optional[List[AiContextGesture]] = None
    task: Optional[dict[str, TaskHintValue]] = None


# ---- requests ----

# Body for the stateless chat endpoints (full history supplied by the client)
class ChatRequest(CamelModel):
    messages: List[ChatTurn] = Field(min_length=1, max_length=MAX_HISTORY_MESSAGES)
    max_tokens: Optional[int] = Field(default=None, gt=0, le=MAX_OUTPUT_TOKENS)
    temperature: Optional[float] = Field(default=None, ge=0, le=1)
    mode: Optional[str] = None
    context: Optional[AiContext] = None


# Body for conversation-attached sends (one new user turn)
class SendMessageRequest(CamelModel):
    content: MessageContent
    max_tokens: Optional[int] = Field(default=None, gt=0, le=MAX_OUTPUT_TOKENS)
    temperature: Optional[float] = Field(default=None, ge=0, le=1)
    context: Optional[AiContext] = None


class CreateConversationRequest(CamelModel):
    title: Optional[str] = Field(default=None, min_length=1, max_length=MAX_TITLE_CHARS)
    mode: Optional[str] = None


# ---- responses ----

class UsageOut(CamelModel):
    input_tokens: int
    output_tokens: int


class ChatCompletionOut(CamelModel):
    content: str
    model: str
    usage: UsageOut
    stop_reason: Optional[str] = None


class ChatResponseOut(ChatCompletionOut):
    request_id: str


class MessageOut(CamelModel):
    id: str
    conversation_id: str
    role: str
    content: Any
    sequence: int
    created_at: Optional[datetime] = None


class MessagesOut(CamelModel):
    messages: List[MessageOut]


class ConversationOut(CamelModel):
    id: str
    owner_id: str
    title: str
    mode: str
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class ConversationsOut(CamelModel):
    conversations: List[ConversationOut]


class SendMessageOut(CamelModel):
    user_message: MessageOut
    assistant_message: MessageOut
    response: ChatCompletionOut


class AuthSessionOut(CamelModel):
    authenticated: bool
    user_id: str
    request_id: str
