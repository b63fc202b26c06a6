"""Rule-based pre-filter that scores incoming messages."""

from __future__ import annotations

import re
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum

from loguru import logger

from parley.bus.events import ChatMessage
from parley.config.schema import ScoringConfig

IGNORE_FLOOR = -1000.0

_QUESTION_WORDS = (
    "?", "？", "怎么", "什么", "谁", "哪", "吗", "呢", "为何", "为什么",
    "how", "what", "who", "where", "why", "when", "is ", "are ", "do ", "does ",
)
_PUNCTUATION_RE = re.compile(r"[.,!?;:(){}\[\]\"']")
_EMOJI_RE = re.compile("[\U0001F300-\U0001FAFF\U00002600-\U000027BF\U0001F1E6-\U0001F1FF]")
_CODE_BLOCK_RE = re.compile(r"```[\s\S]*?```")
_URL_RE = re.compile(r"https?://\S+")


class ScoreDecision(str, Enum):
    RESPOND = "respond"
    EVALUATE = "evaluate"
    DISCARD = "discard"


@dataclass
class ScoringResult:
    message_id: str
    score: float
    reasons: list[str] = field(default_factory=list)


RuleFn = Callable[[ChatMessage, list[ChatMessage]], bool]


class MessageScorer:
    """Adds the configured weight of every rule a message matches."""

    def __init__(self, config: ScoringConfig, bot_user_id: str = ""):
        self.config = config
        self.bot_user_id = bot_user_id
        self._rules: dict[str, RuleFn] = {
            "mention_bot": self._mention_bot,
            "is_question": self._is_question,
            "is_reply_to_bot": self._is_reply_to_bot,
            "length_long": self._length_long,
            "length_short": self._length_short,
            "contains_keywords": self._contains_keywords,
            "repeated_content": self._repeated_content,
            "all_caps": self._all_caps,
            "excessive_punctuation": self._excessive_punctuation,
            "code_block": self._code_block,
            "url_link": self._url_link,
            "bot_author": self._bot_author,
            "non_text_message": self._non_text_message,
        }

    @property
    def rule_names(self) -> list[str]:
        return list(self._rules)

    def score_messages(
        self,
        key: str,
        messages: list[ChatMessage],
        context_messages: list[ChatMessage] | None = None,
    ) -> list[ScoringResult]:
        context = context_messages or []
        results: list[ScoringResult] = []
        for message in messages:
            total = 0.0
            reasons: list[str] = []
            for rule_name, weight in self.config.rules.items():
                rule = self._rules.get(rule_name)
                if rule is None:
                    logger.warning(f"No scoring function registered for rule: {rule_name}")
                    continue
                try:
                    matched = rule(message, context)
                except Exception as e:
                    logger.warning(f"Scoring rule {rule_name} failed for message {message.id}: {e}")
                    continue
                if matched:
                    total += weight
                    reasons.append(f"{rule_name}: {weight:+g}")
            logger.debug(f"[{key}] message {message.id} scored {total:g} ({', '.join(reasons) or 'no rules'})")
            results.append(ScoringResult(message_id=message.id, score=total, reasons=reasons))
        return results

    def _mention_bot(self, message: ChatMessage, context: list[ChatMessage]) -> bool:
        return bool(self.bot_user_id) and self.bot_user_id in message.mentioned_users

    def _is_question(self, message: ChatMessage, context: list[ChatMessage]) -> bool:
        lowered = message.content.lower()
        return lowered.rstrip().endswith(("?", "？")) or any(word in lowered for word in _QUESTION_WORDS)

    def _is_reply_to_bot(self, message: ChatMessage, context: list[ChatMessage]) -> bool:
        ref = message.reference
        if ref is None or not ref.message_id:
            return False
        for candidate in context:
            if candidate.id == ref.message_id:
                return candidate.is_bot and (
                    not self.bot_user_id or candidate.author_id == self.bot_user_id
                )
        # Referenced message is outside the window; assume it may be ours.
        return True

    def _length_long(self, message: ChatMessage, context: list[ChatMessage]) -> bool:
        return len(message.content) > self.config.long_length

    def _length_short(self, message: ChatMessage, context: list[ChatMessage]) -> bool:
        return len(message.content) < self.config.short_length

    def _contains_keywords(self, message: ChatMessage, context: list[ChatMessage]) -> bool:
        lowered = message.content.lower()
        return any(keyword.lower() in lowered for keyword in self.config.keywords if keyword)

    def _repeated_content(self, message: ChatMessage, context: list[ChatMessage]) -> bool:
        earlier = [m for m in context if m.id != message.id]
        recent = earlier[-self.config.repeated_lookback:] if self.config.repeated_lookback > 0 else []
        return any(m.content == message.content and m.author_id == message.author_id for m in recent)

    def _all_caps(self, message: ChatMessage, context: list[ChatMessage]) -> bool:
        letters = re.sub(r"[^a-zA-Z]", "", message.content)
        return len(letters) >= 5 and letters == letters.upper()

    def _excessive_punctuation(self, message: ChatMessage, context: list[ChatMessage]) -> bool:
        content = message.content
        count = len(_PUNCTUATION_RE.findall(content)) + len(_EMOJI_RE.findall(content))
        return count > 10 or (len(content) > 0 and count / len(content) > 0.5)

    def _code_block(self, message: ChatMessage, context: list[ChatMessage]) -> bool:
        return bool(_CODE_BLOCK_RE.search(message.content))

    def _url_link(self, message: ChatMessage, context: list[ChatMessage]) -> bool:
        return bool(_URL_RE.search(message.content))

    def _bot_author(self, message: ChatMessage, context: list[ChatMessage]) -> bool:
        return message.is_bot

    def _non_text_message(self, message: ChatMessage, context: list[ChatMessage]) -> bool:
        return not message.content.strip()


def aggregate_decision(
    results: list[ScoringResult],
    respond_threshold: float,
    discard_threshold: float,
) -> ScoreDecision:
    """
    Collapse per-message scores into one batch decision.

    Scores at or below the ignore floor are dropped. The strongest remaining
    score decides: at or above ``respond_threshold`` responds, strictly below
    ``discard_threshold`` discards, anything between is evaluated.
    """
    valid = [r.score for r in results if r.score > IGNORE_FLOOR]
    if not valid:
        return ScoreDecision.DISCARD
    strongest = max(valid)
    if strongest >= respond_threshold:
        return ScoreDecision.RESPOND
    if strongest < discard_threshold:
        return ScoreDecision.DISCARD
    return ScoreDecision.EVALUATE
