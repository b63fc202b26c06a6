"""Configuration schema using Pydantic."""

from pathlib import Path

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from parley.utils.helpers import get_data_path


def _default_data_dir() -> str:
    return str(get_data_path() / "data")


DEFAULT_SYSTEM_TEMPLATE = """{{PERSONA_DETAILS}}

{{LANGUAGE_INSTRUCTION}}

Your tasks:
1. Take part in the group chat naturally, like a regular member.
2. Reply from the current chat context and your persona; do not talk about being an assistant.
3. Keep replies short and conversational. One-liners are fine.
4. Avoid generic, templated phrasing and do not open every reply the same way.
5. Prioritise direct mentions and direct questions, but you are not obliged to answer everything seriously.
"""

DEFAULT_EVALUATION_TEMPLATE = """You are a message evaluation assistant. Analyse a batch of chat messages and decide
whether any of them deserves a reply from a chat participant with this persona, then pick the best one.

Persona:
{{PERSONA_DETAILS}}

Criteria:
1. Direct mentions of the persona or its keywords rank highest.
2. Direct questions to the persona rank high.
3. Interesting or thought-provoking content is worth a reply.
4. Skip very short, meaningless, repeated or emoji-only messages.
5. Never pick messages written by bots.
6. Never pick a message whose was_replied field is true.
"""


class ModelRouteConfig(BaseModel):
    """One model identity ("main" or "eval")."""
    model: str = ""
    api_key: str = ""
    api_base: str | None = None
    temperature: float = 0.7
    max_tokens: int = 4096
    fallback_models: list[str] = Field(default_factory=list)


class ModelsConfig(BaseModel):
    """Model identities used by the pipeline."""
    main: ModelRouteConfig = Field(
        default_factory=lambda: ModelRouteConfig(temperature=1.1, max_tokens=8192)
    )
    eval: ModelRouteConfig = Field(
        default_factory=lambda: ModelRouteConfig(temperature=0.8, max_tokens=4096)
    )


class BufferConfig(BaseModel):
    """Intake batching window."""
    size: int = 10
    base_window_s: float = 5.0
    max_window_s: float = 30.0
    backoff_multiplier: float = 1.5
    jitter_min: float = 1.2
    jitter_max: float = 1.43


def _default_rule_weights() -> dict[str, float]:
    return {
        "mention_bot": 100,
        "is_question": 10,
        "is_reply_to_bot": 15,
        "length_long": 5,
        "length_short": -5,
        "contains_keywords": 30,
        "repeated_content": -20,
        "all_caps": -5,
        "excessive_punctuation": -10,
        "code_block": 5,
        "url_link": -5,
        "bot_author": -2000,  # pushes bot messages under the ignore floor
        "non_text_message": -15,
    }


class ScoringConfig(BaseModel):
    """Rule-based pre-filter."""
    respond_threshold: float = 25
    discard_threshold: float = -10
    rules: dict[str, float] = Field(default_factory=_default_rule_weights)
    keywords: list[str] = Field(default_factory=lambda: ["bot", "机器人"])
    long_length: int = 20
    short_length: int = 5
    repeated_lookback: int = 5


class DecisionConfig(BaseModel):
    """LLM evaluation stage."""
    base_threshold: float = 0.35
    respond_on_evaluator_failure: bool = False
    evaluation_lookback: int = 10


class ContextConfig(BaseModel):
    """Rolling conversation window."""
    max_messages: int = 20
    max_age_seconds: int = 3600
    cache_size: int = 500


class RetryPolicy(BaseModel):
    """Bounded exponential backoff for one call site."""
    max_attempts: int = 3
    base_delay_s: float = 1.0
    max_delay_s: float = 8.0


class RetryConfig(BaseModel):
    """Retry policies per call site."""
    evaluator: RetryPolicy = Field(
        default_factory=lambda: RetryPolicy(max_attempts=4, base_delay_s=2.0, max_delay_s=30.0)
    )
    responder: RetryPolicy = Field(default_factory=RetryPolicy)


class ProactiveConfig(BaseModel):
    """Self-initiated messages."""
    enabled: bool = True
    max_pending_per_conversation: int = 2
    max_lateness_s: int = 6 * 3600  # older due rows are cancelled instead of sent
    poll_interval_s: float = 30.0


class LanguageConfig(BaseModel):
    """Reply language."""
    primary: str = "auto"  # auto | ISO code such as "en", "zh"
    fallback: str = "en"
    auto_detect: bool = True


class EmotionThresholds(BaseModel):
    """Ascending bucket boundaries per metric."""
    affinity: list[int] = Field(default_factory=lambda: [-60, -20, 0, 40])
    annoyance: list[int] = Field(default_factory=lambda: [-40, -10, 10, 40])
    trust: list[int] = Field(default_factory=lambda: [-50, -15, 10, 45])
    curiosity: list[int] = Field(default_factory=lambda: [-30, -5, 20, 50])


class EmotionsConfig(BaseModel):
    """Relationship metric bounds."""
    enabled: bool = True
    delta_caps: dict[str, int] = Field(
        default_factory=lambda: {"affinity": 12, "annoyance": 12, "trust": 12, "curiosity": 12}
    )
    thresholds: EmotionThresholds = Field(default_factory=EmotionThresholds)


class PersonaConfig(BaseModel):
    """Persona prompt and identity."""
    name: str = "Parley"
    details: str = "A friendly, slightly sarcastic regular of this chat."
    system_template: str = DEFAULT_SYSTEM_TEMPLATE
    evaluation_template: str = DEFAULT_EVALUATION_TEMPLATE
    emotion_thresholds: EmotionThresholds | None = None
    emotion_delta_caps: dict[str, int] | None = None


class ConversationOverride(BaseModel):
    """Per-conversation behaviour overrides."""
    responsiveness: float = 1.0
    max_context_messages: int | None = None
    language: str | None = None
    persona_id: str | None = None


class StorageConfig(BaseModel):
    """File-backed stores."""
    data_dir: str = Field(default_factory=_default_data_dir)


class Config(BaseSettings):
    """Root configuration for parley."""
    bot_user_id: str = ""
    log_level: str = "INFO"
    models: ModelsConfig = Field(default_factory=ModelsConfig)
    buffer: BufferConfig = Field(default_factory=BufferConfig)
    scoring: ScoringConfig = Field(default_factory=ScoringConfig)
    decision: DecisionConfig = Field(default_factory=DecisionConfig)
    context: ContextConfig = Field(default_factory=ContextConfig)
    retry: RetryConfig = Field(default_factory=RetryConfig)
    proactive: ProactiveConfig = Field(default_factory=ProactiveConfig)
    language: LanguageConfig = Field(default_factory=LanguageConfig)
    emotions: EmotionsConfig = Field(default_factory=EmotionsConfig)
    personas: dict[str, PersonaConfig] = Field(default_factory=lambda: {"default": PersonaConfig()})
    default_persona: str = "default"
    conversations: dict[str, ConversationOverride] = Field(default_factory=dict)
    storage: StorageConfig = Field(default_factory=StorageConfig)

    @property
    def data_path(self) -> Path:
        """Expanded storage directory."""
        return Path(self.storage.data_dir).expanduser()

    def conversation(self, key: str) -> ConversationOverride:
        """Overrides for ``key``, or defaults when none are configured."""
        return self.conversations.get(key) or ConversationOverride()

    def persona_id_for(self, key: str) -> str:
        override = self.conversation(key).persona_id
        if override and override in self.personas:
            return override
        return self.default_persona

    def persona_for(self, key: str) -> PersonaConfig:
        """Persona for a conversation, falling back to the default persona."""
        persona = self.personas.get(self.persona_id_for(key))
        return persona or PersonaConfig()

    def emotion_thresholds_for(self, key: str) -> dict[str, list[int]]:
        """Bucket boundaries for the conversation's persona, else the global ones."""
        thresholds = self.persona_for(key).emotion_thresholds or self.emotions.thresholds
        return thresholds.model_dump()

    def delta_caps_for(self, key: str) -> dict[str, int]:
        return {**self.emotions.delta_caps, **(self.persona_for(key).emotion_delta_caps or {})}

    def language_for(self, key: str) -> str:
        return self.conversation(key).language or self.language.primary

    def max_context_messages_for(self, key: str) -> int:
        override = self.conversation(key).max_context_messages
        if override and override > 0:
            return override
        return self.context.max_messages

    model_config = SettingsConfigDict(
        env_prefix="PARLEY_",
        env_nested_delimiter="__",
    )
