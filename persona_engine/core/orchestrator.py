"""Conversation Orchestrator: the per-message entry point.

Coordinates every component for one user message:
  1. Normalise input and resolve the persona
  2. Analyse the user's emotion
  3. Assemble budgeted conversation context
  4. Retrieve relevant memories
  5. Compose the system prompt and pick generation parameters
  6. Persist the user turn, generate, persist the assistant turn
  7. Queue memory extraction for the exchange

Only the generation call can fail in a user-visible way. The user turn is
written before generation and the assistant turn only after it succeeds, so
a failed call leaves a user turn with no reply and nothing else.
"""

from __future__ import annotations

import logging
import re
import time
from typing import Any, Protocol

from persona_engine.config import ENGINE_CONFIG
from persona_engine.core.context import ContextAssembler
from persona_engine.core.curator import MemoryCurator
from persona_engine.core.extraction_queue import ExtractionQueue
from persona_engine.core.prompt_composer import PromptComposer, normalize_user_input
from persona_engine.core.retrieval import MemoryRetriever
from persona_engine.emotion.analyzer import EmotionAnalyzer, detect_reply_emotion
from persona_engine.errors import PersonaNotFoundError
from persona_engine.models import (
    ChatMetadata,
    ChatMode,
    ChatResponse,
    ExtractionJob,
    FewShotExample,
    GenerationResult,
    MaintenanceResult,
    Persona,
    Role,
)
from persona_engine.storage.sqlite_store import SQLiteStore

logger = logging.getLogger(__name__)

_GREETING = re.compile(r"^(你好|hi|hello|嗨)", re.IGNORECASE)


class PersonaProvider(Protocol):
    async def get_persona(self, persona_id: str) -> Persona | None: ...


class Generator(Protocol):
    async def complete(
        self,
        messages: list[dict[str, str]],
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> GenerationResult: ...

    # Optional: def check_configuration(self) -> None, raising ConfigurationError.
    # Called before anything is persisted when the generator provides it.


class ConversationOrchestrator:
    """Top-level conversation interface for the host application."""

    def __init__(
        self,
        store: SQLiteStore,
        generator: Generator,
        persona_provider: PersonaProvider | None = None,
        config: dict | None = None,
    ) -> None:
        self.store = store
        self.generator = generator
        self.personas = persona_provider or store
        self.config = config or ENGINE_CONFIG

        self.emotions = EmotionAnalyzer(self.config)
        self.context = ContextAssembler(store, self.config)
        self.retriever = MemoryRetriever(store, self.config)
        self.composer = PromptComposer(self.config)
        self.curator = MemoryCurator(store, generator, self.config)
        self.extraction = ExtractionQueue(self.curator, self.config)

    def start(self) -> None:
        """Start the background extraction worker. Needs a running event loop."""
        self.extraction.start()

    async def close(self) -> None:
        """Finish queued extraction jobs and stop the worker."""
        await self.extraction.close()

    # ── Core operation ──

    async def process_message(
        self, persona_id: str, user_message: str, mode: ChatMode | str = ChatMode.TEXT,
    ) -> ChatResponse:
        """Answer one user message in the persona's voice.

        Raises:
            PersonaNotFoundError: unknown persona; nothing is persisted.
            ConfigurationError: the generator is not usable; nothing is persisted.
            GenerationError: the backend call failed; the user turn is kept.
        """
        message = normalize_user_input(user_message, self.config["max_user_input_chars"])

        persona = await self.personas.get_persona(persona_id)
        if persona is None:
            raise PersonaNotFoundError(
                f"Persona {persona_id} not found", details={"persona_id": persona_id},
            )

        check_configuration = getattr(self.generator, "check_configuration", None)
        if check_configuration is not None:
            check_configuration()

        analysis = self.emotions.analyze(message)
        logger.debug(
            "User emotion for persona %s: %s (%.0f%%)",
            persona_id, analysis.primary.value, analysis.confidence * 100,
        )

        context = await self.context.get_optimized_context(
            persona_id, max_messages=self.config["orchestrator_context_messages"],
        )
        memories = await self.retriever.retrieve_relevant_memories(
            persona_id,
            message,
            limit=self.config["retrieval_limit"],
            min_score=self.config["retrieval_min_score"],
        )

        system_prompt = self.composer.compose(persona, memories=memories, emotion=analysis)
        params = self.emotions.generation_params(analysis)

        messages = [{"role": "system", "content": system_prompt}]
        messages.extend(
            {"role": "user" if turn.role == Role.USER else "assistant", "content": turn.content}
            for turn in context.turns
        )
        messages.append({"role": "user", "content": message})

        user_turn = await self.store.add_turn(
            persona_id, Role.USER, message, mode=mode, emotion=analysis.primary,
        )

        started = time.monotonic()
        result = await self.generator.complete(
            messages, temperature=params.temperature, max_tokens=params.max_tokens,
        )
        latency_ms = int((time.monotonic() - started) * 1000)

        reply_emotion = detect_reply_emotion(result.content)
        assistant_turn = await self.store.add_turn(
            persona_id,
            Role.ASSISTANT,
            result.content,
            mode=mode,
            emotion=reply_emotion,
            tokens_used=result.tokens_used,
            response_time_ms=latency_ms,
        )

        self.extraction.submit(ExtractionJob(
            persona_id=persona_id,
            user_message=message,
            assistant_reply=result.content,
            source_turn_id=user_turn.id,
        ))

        return ChatResponse(
            content=result.content,
            emotion=reply_emotion,
            tokens_used=result.tokens_used,
            metadata=ChatMetadata(
                memories_used=len(memories),
                context_turns=len(context.turns),
                user_emotion=analysis.primary,
                user_emotion_confidence=analysis.confidence,
                response_style=params.style_hint,
            ),
            user_turn_id=user_turn.id,
            assistant_turn_id=assistant_turn.id,
        )

    # ── Maintenance and analytics ──

    async def perform_memory_maintenance(self, persona_id: str) -> MaintenanceResult:
        return await self.curator.run_maintenance(persona_id)

    async def get_conversation_analytics(self, persona_id: str) -> dict[str, Any]:
        """Context statistics, memory statistics and the user's mood trend."""
        turns = await self.store.get_recent_turns(
            persona_id, limit=self.config["trend_history_limit"],
        )
        series = [t.emotion for t in turns if t.role == Role.USER and t.emotion]
        return {
            "context": await self.context.get_context_stats(persona_id),
            "memory": await self.curator.memory_stats(persona_id),
            "emotion_trend": self.emotions.analyze_trend(series),
        }

    async def generate_conversation_summary(self, persona_id: str) -> str:
        return await self.context.generate_context_summary(persona_id)

    async def get_personalization_suggestions(self, persona_id: str) -> list[str]:
        """Hints for the user on how to deepen the conversation."""
        suggestions = []

        stats = await self.context.get_context_stats(persona_id)
        if stats.total_messages < 10:
            suggestions.append("多和虚拟人聊天，建立更深的联系")
        if stats.average_message_length < 20:
            suggestions.append("可以分享更多细节，让对话更丰富")

        memory_stats = await self.curator.memory_stats(persona_id)
        if memory_stats.total < 5:
            suggestions.append("分享更多个人信息，让虚拟人更了解你")
        if memory_stats.by_category.get("preferences", 0) == 0:
            suggestions.append("告诉虚拟人你的喜好和兴趣")

        turns = await self.store.get_recent_turns(
            persona_id, limit=self.config["suggestion_history_limit"],
        )
        trend = self.emotions.analyze_trend(
            [t.emotion for t in turns if t.role == Role.USER and t.emotion]
        )
        if trend.trend == "declining":
            suggestions.append("最近情绪似乎不太好，可以和虚拟人聊聊烦恼")
        if trend.stability < 0.5:
            suggestions.append("情绪波动较大，虚拟人会陪伴你度过起伏")

        return suggestions

    async def extract_few_shot_examples(
        self, persona_id: str, count: int | None = None,
    ) -> list[FewShotExample]:
        """Pick well-formed user/assistant pairs from history as style examples.

        A pair qualifies when the user message is 20-200 characters and not a
        bare greeting, and the reply that immediately follows is at least 30
        characters.
        """
        count = count if count is not None else self.config["few_shot_count"]
        min_user = self.config["few_shot_min_user_chars"]
        max_user = self.config["few_shot_max_user_chars"]
        min_reply = self.config["few_shot_min_reply_chars"]

        turns = await self.store.get_recent_turns(
            persona_id, limit=self.config["few_shot_history_limit"],
        )
        examples: list[FewShotExample] = []
        for current, following in zip(turns, turns[1:]):
            if current.role != Role.USER or following.role != Role.ASSISTANT:
                continue
            if not min_user <= len(current.content) <= max_user:
                continue
            if len(following.content) < min_reply or _GREETING.match(current.content):
                continue
            examples.append(FewShotExample(user=current.content, assistant=following.content))
            if len(examples) >= count:
                break
        return examples
