"""Configuration for the Persona Conversation Context Engine."""

import os
from pathlib import Path

# Base data directory; the default SQLite database lives here
DATA_DIR = Path(os.getenv("PERSONA_ENGINE_DATA_DIR", "data"))
DB_PATH = DATA_DIR / "persona_engine.db"

ENGINE_CONFIG = {
    # LLM
    "llm_model": os.getenv("PERSONA_ENGINE_LLM_MODEL", "gpt-4o-mini"),
    "llm_api_base": os.getenv("PERSONA_ENGINE_LLM_API_BASE"),
    "llm_api_key": os.getenv("PERSONA_ENGINE_LLM_API_KEY"),
    "llm_timeout_seconds": 60,
    "llm_max_retries": 1,
    "extraction_temperature": 0.2,

    # Relevance scoring: weights must sum to 1.0
    "relevance_keyword_weight": 0.4,
    "relevance_importance_weight": 0.3,
    "relevance_recency_weight": 0.2,
    "relevance_category_weight": 0.1,
    "recency_horizon_days": 365,
    "category_weights": {
        "basic_info": 1.0,
        "preferences": 0.9,
        "experiences": 0.8,
        "relationships": 0.7,
        "other": 0.6,
    },

    # Retrieval
    "retrieval_limit": 5,
    "retrieval_min_score": 0.3,
    "retrieval_overfetch_factor": 2,

    # Curation
    "consolidation_similarity_threshold": 0.8,
    "forget_max_age_days": 365,
    "forget_min_importance": 2,
    "maintenance_max_age_days": 180,
    "extraction_context_chars": 50,
    "extraction_key_chars": 50,
    "extraction_failure_log_size": 100,

    # Context assembly
    "chars_per_token": 2.5,
    "max_context_tokens": 3000,
    "context_max_messages": 20,
    "orchestrator_context_messages": 15,
    "compression_keep_recent": 10,
    "summary_topic_count": 5,
    "sliding_window_size": 10,
    "relevant_context_max_messages": 10,
    "relevant_context_fetch": 50,
    "relevant_context_threshold": 0.3,
    "summary_history_limit": 100,
    "stats_history_limit": 1000,

    # Generation parameters before emotion tuning
    "base_temperature": 0.8,
    "base_max_tokens": 500,

    # Prompt composition
    "max_experiences_in_prompt": 5,
    "max_user_input_chars": 500,
    "few_shot_count": 3,
    "few_shot_history_limit": 100,
    "few_shot_min_user_chars": 20,
    "few_shot_max_user_chars": 200,
    "few_shot_min_reply_chars": 30,

    # Analytics
    "trend_history_limit": 100,
    "suggestion_history_limit": 50,
}
