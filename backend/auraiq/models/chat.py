"""
Models for the chat ingestion pipeline.

Pydantic models describe JSON that crosses the HTTP boundary; the dataclasses
are internal values created and consumed within a single request.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import List, Literal, Optional, Tuple

from pydantic import BaseModel, Field


class TaskType(str, Enum):
    AUTO = "auto"
    DAILY = "daily"
    CODING = "coding"


class HistoryMessage(BaseModel):
    """One prior conversation turn as sent by the client."""
    id: str
    text: str = ""
    sender: Literal["user", "ai"]


class ChatMessage(BaseModel):
    """OpenAI-style chat message accepted by the IQ1 endpoint."""
    role: Literal["system", "user", "assistant"]
    content: str


class Iq1ChatRequest(BaseModel):
    messages: List[ChatMessage]
    system_prompt: Optional[str] = Field(None, alias="systemPrompt")

    model_config = {"populate_by_name": True}


class DeleteFilesRequest(BaseModel):
    urls: List[str]


# ---------------------------------------------------------------------------
# Internal request-scoped values
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Attachment:
    """A newly uploaded file part."""
    name: str
    media_type: str
    content: bytes

    @property
    def size(self) -> int:
        return len(self.content)


@dataclass(frozen=True)
class IncomingRequest:
    """Validated chat request. Immutable once built by intake."""
    input: str
    task_type: TaskType = TaskType.AUTO
    context: Optional[str] = None
    history: Tuple[HistoryMessage, ...] = ()
    attachments: Tuple[Attachment, ...] = ()
    context_file_urls: Tuple[str, ...] = ()


@dataclass(frozen=True)
class SourceFile:
    """
    Bytes handed to an extractor.

    ``url`` is set when the bytes were fetched from an already-stored object
    (context files); image extractors reuse it instead of uploading again.
    """
    name: str
    media_type: str
    content: bytes
    url: Optional[str] = None


@dataclass
class ExtractedContent:
    """Text and image references produced from one source."""
    text: str = ""
    image_urls: List[str] = field(default_factory=list)


@dataclass
class ExtractionOutcome:
    """
    Result of processing one source: either content or an error, never both.

    ``label`` is the delimiter prefix used when the text is assembled
    ("Content of attached file" / "Content from context file"), ``token_budget``
    the per-file ceiling applied before merging, and ``error`` the inline system
    note that replaces the content when the source failed.
    """
    name: str
    label: str
    token_budget: int
    content: Optional[ExtractedContent] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass
class AssembledContent:
    """Merged output of every source for one request."""
    text: str
    image_urls: List[str] = field(default_factory=list)
    failures: List[str] = field(default_factory=list)

    @property
    def has_image(self) -> bool:
        return bool(self.image_urls)
