"""Data models for the Persona Conversation Context Engine."""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum


def _now() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="microseconds")


def _uuid() -> str:
    return str(uuid.uuid4())


def to_timestamp(value: datetime | str | None) -> str | None:
    """Normalise a datetime (or ISO string) to the stored UTC string form."""
    if value is None:
        return None
    if isinstance(value, str):
        value = parse_timestamp(value)
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def parse_timestamp(value: str) -> datetime:
    """Parse a stored timestamp; naive values are treated as UTC."""
    dt = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


class MemoryCategory(str, Enum):
    BASIC_INFO = "basic_info"
    PREFERENCES = "preferences"
    EXPERIENCES = "experiences"
    RELATIONSHIPS = "relationships"
    OTHER = "other"


class Role(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"


class ChatMode(str, Enum):
    TEXT = "text"
    VOICE = "voice"
    VIDEO = "video"


class Emotion(str, Enum):
    NEUTRAL = "neutral"
    HAPPY = "happy"
    SAD = "sad"
    ANGRY = "angry"
    SURPRISED = "surprised"
    THINKING = "thinking"
    EXCITED = "excited"


@dataclass
class Memory:
    id: str = field(default_factory=_uuid)
    persona_id: str = ""
    category: MemoryCategory = MemoryCategory.OTHER
    key: str = ""
    value: str = ""
    importance: int = 3
    context: str | None = None
    tags: list[str] = field(default_factory=list)

    # Provenance and access
    created_at: str = field(default_factory=_now)
    source_turn_id: str | None = None
    last_accessed: str | None = None
    access_count: int = 0
    expires_at: str | None = None

    @property
    def content(self) -> str:
        return self.value


@dataclass
class ConversationTurn:
    id: str = field(default_factory=_uuid)
    persona_id: str = ""
    role: Role = Role.USER
    content: str = ""
    mode: ChatMode = ChatMode.TEXT
    emotion: Emotion | None = None
    tokens_used: int | None = None
    response_time_ms: int | None = None
    created_at: str = field(default_factory=_now)
    is_important: bool = False
    is_deleted: bool = False


@dataclass
class ConversationContext:
    """Token-budgeted slice of history for one request. Never persisted."""
    turns: list[ConversationTurn] = field(default_factory=list)
    token_count: int = 0
    summary: str | None = None


@dataclass
class EmotionAnalysis:
    primary: Emotion = Emotion.NEUTRAL
    secondary: Emotion | None = None
    intensity: float = 0.0
    confidence: float = 0.5
    valence: float = 0.0
    arousal: float = 0.5
    scores: dict[Emotion, float] = field(default_factory=dict)


@dataclass
class ResponseStyle:
    tone: str = ""
    pace: str = ""
    suggestions: list[str] = field(default_factory=list)


@dataclass
class GenerationParams:
    temperature: float = 0.8
    max_tokens: int = 500
    style_hint: str = ""


@dataclass
class EmotionTrend:
    dominant: Emotion = Emotion.NEUTRAL
    # Evenness of the distribution: 1.0 for uniform, lower as it concentrates
    stability: float = 1.0
    distribution: dict[Emotion, float] = field(default_factory=dict)
    trend: str = "stable"  # improving | declining | stable


@dataclass
class Personality:
    extroversion: float = 0.5
    rationality: float = 0.5
    seriousness: float = 0.5
    openness: float = 0.5
    gentleness: float = 0.5


@dataclass
class Experience:
    year: int = 0
    event: str = ""
    importance: int = 3


@dataclass
class Persona:
    id: str = field(default_factory=_uuid)
    name: str = ""
    age: int | None = None
    gender: str = "other"  # male | female | other
    occupation: str | None = None
    personality: Personality = field(default_factory=Personality)
    background_story: str = ""
    experiences: list[Experience] = field(default_factory=list)


@dataclass
class ExtractedMemory:
    content: str = ""
    category: MemoryCategory = MemoryCategory.OTHER
    importance: int = 3


@dataclass
class FewShotExample:
    user: str = ""
    assistant: str = ""


@dataclass
class GenerationResult:
    content: str = ""
    tokens_used: int = 0


@dataclass
class ChatMetadata:
    memories_used: int = 0
    context_turns: int = 0
    user_emotion: Emotion = Emotion.NEUTRAL
    user_emotion_confidence: float = 0.0
    response_style: str = ""

    @property
    def user_emotion_detected(self) -> str:
        return f"{self.user_emotion.value} ({self.user_emotion_confidence * 100:.0f}%)"


@dataclass
class ChatResponse:
    content: str = ""
    emotion: Emotion = Emotion.NEUTRAL
    tokens_used: int = 0
    metadata: ChatMetadata = field(default_factory=ChatMetadata)
    user_turn_id: str = ""
    assistant_turn_id: str = ""


@dataclass
class MaintenanceResult:
    ran_at: str = field(default_factory=_now)
    consolidated: int = 0
    forgotten: int = 0


@dataclass
class MemoryStats:
    total: int = 0
    by_category: dict[str, int] = field(default_factory=dict)
    by_importance: dict[int, int] = field(default_factory=dict)
    average_importance: float = 0.0
    oldest: str | None = None
    newest: str | None = None


@dataclass
class ContextStats:
    total_messages: int = 0
    user_messages: int = 0
    assistant_messages: int = 0
    average_message_length: int = 0
    estimated_total_tokens: int = 0
    conversation_days: int = 0


@dataclass
class ExtractionJob:
    persona_id: str = ""
    user_message: str = ""
    assistant_reply: str = ""
    source_turn_id: str | None = None


@dataclass
class ExtractionFailure:
    persona_id: str = ""
    error: str = ""
    failed_at: str = field(default_factory=_now)
