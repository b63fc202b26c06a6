"""Prompt assembly for the evaluation and response model calls."""

from __future__ import annotations

import re
import unicodedata
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any

from loguru import logger

from parley.agent.directives import EMOTION_METRICS
from parley.agent.emotions import EmotionSnapshot, summarize_tone
from parley.bus.events import ChatMessage
from parley.config.schema import PersonaConfig
from parley.proactive.scheduler import ProactiveSummary
from parley.utils.helpers import ms_to_iso

DEFAULT_DELTA_BOUND = 12
TARGET_PREVIEW_CHARS = 220

LANGUAGE_NAMES = {
    "zh": "Chinese",
    "en": "English",
    "ja": "Japanese",
    "ko": "Korean",
    "es": "Spanish",
    "fr": "French",
    "de": "German",
    "ru": "Russian",
    "pt": "Portuguese",
}

AUTO_LANGUAGE_INSTRUCTION = (
    "**IMPORTANT** Detect the primary language of the chat history automatically and reply in that language."
)
SPECIFIC_LANGUAGE_TEMPLATE = (
    "**IMPORTANT** Respond in {{LANGUAGE_NAME}}. Even if some context is written in another language, "
    "keep using the specified language. If {{LANGUAGE_NAME}} is not possible, fall back to {{FALLBACK_NAME}}."
)

_PLACEHOLDER_RE = re.compile(r"\{\{\s*([A-Za-z0-9_]+)\s*\}\}")


@dataclass
class BuiltPrompt:
    messages: list[dict[str, Any]]
    temperature: float
    max_tokens: int


def render_template(template: str, values: dict[str, str]) -> str:
    """Replace ``{{NAME}}`` placeholders. Unknown placeholders render empty."""

    def _sub(match: re.Match[str]) -> str:
        name = match.group(1)
        if name in values:
            return values[name]
        logger.warning(f"Prompt template placeholder {{{{{name}}}}} has no value; rendering empty")
        return ""

    return _PLACEHOLDER_RE.sub(_sub, template or "")


def language_instruction(primary: str, fallback: str = "en", auto_detect: bool = True) -> str:
    """Reply-language line. "auto" with detection off pins replies to ``fallback``."""
    code = (primary or "auto").strip().lower()
    if code == "auto":
        if auto_detect:
            return AUTO_LANGUAGE_INSTRUCTION
        code = primary = (fallback or "en").strip().lower()
    return render_template(
        SPECIFIC_LANGUAGE_TEMPLATE,
        {
            "LANGUAGE_NAME": LANGUAGE_NAMES.get(code, primary),
            "FALLBACK_NAME": LANGUAGE_NAMES.get(fallback, fallback),
        },
    )


def sanitize_name(name: str) -> str:
    """Speaker name safe for the chat-completion ``name`` field."""
    out = unicodedata.normalize("NFKC", name or "").strip()
    out = re.sub(r"\s+", "_", out)
    out = re.sub(r"[\x00-\x1f\x7f]", "", out)
    out = re.sub(r'[{}\[\]",:]', "_", out)
    out = out[:48]
    return out or "user"


def user_mention_directory(messages: list[ChatMessage]) -> str | None:
    seen: dict[str, str] = {}
    for message in messages:
        seen.setdefault(message.author_id, message.author_name)
    if not seen:
        return None
    lines = ["User mention directory:"]
    lines.extend(f"- <@{user_id}> → {name}" for user_id, name in seen.items())
    lines.append("When mentioning any participant, always use the <@user_id> form shown above.")
    return "\n".join(lines)


def relationship_hints(snapshots: list[EmotionSnapshot], focus_user_id: str | None = None) -> str | None:
    if not snapshots:
        return None
    lines = ["Relationship hints:"]
    for snapshot in snapshots:
        prefix = "* Priority target" if focus_user_id and snapshot.target_user_id == focus_user_id else "- Participant"
        lines.append(f"{prefix}: <@{snapshot.target_user_id}>: {summarize_tone(snapshot)}")
    lines.append("Use these cues to adjust tone. Do not expose numeric metrics directly.")
    return "\n".join(lines)


def target_block(target: ChatMessage | None) -> str | None:
    if target is None:
        return None
    preview = target.content
    if len(preview) > TARGET_PREVIEW_CHARS:
        preview = preview[:TARGET_PREVIEW_CHARS] + "…"
    return "\n".join(
        [
            "Primary reply target:",
            f"- author: {target.author_name} <@{target.author_id}>",
            f"- message_id: {target.id}",
            f"- excerpt: {preview}",
        ]
    )


def selection_guidance(bot_mention: str) -> str:
    return "\n".join(
        [
            "Response selection guidance:",
            "- Read the entire context to determine which unresolved message deserves attention.",
            f"- Favor direct questions, thoughtful remarks, or anything explicitly addressing the bot "
            f"(mentions of {bot_mention} or equivalent).",
            "- If no message stands out, reply to the latest relevant human message.",
        ]
    )


def pending_block(pending: list[ProactiveSummary]) -> str | None:
    if not pending:
        return None
    lines = ["Pending proactive sends (review and cancel if obsolete):"]
    for index, item in enumerate(pending, start=1):
        lines.append(
            f"{index}. id={item.id} window={ms_to_iso(item.scheduled_at)} "
            f"status={item.status} preview={item.content_preview}"
        )
    lines.append("Add any ids that should be cancelled to `cancel_schedule_ids` in the output JSON.")
    return "\n".join(lines)


def conversation_turns(messages: list[ChatMessage]) -> list[dict[str, Any]]:
    return [
        {
            "role": "assistant" if message.is_bot else "user",
            "name": sanitize_name(message.author_name),
            "content": message.content,
        }
        for message in messages
    ]


def evaluation_text(context: list[ChatMessage], batch: list[ChatMessage], lookback: int = 10) -> str:
    """Recent context plus the batch as plain-text blocks, de-duplicated by id."""
    recent = context[-lookback:] if lookback > 0 else []
    seen: set[str] = set()
    blocks: list[str] = []
    for message in [*recent, *batch]:
        if message.id in seen:
            continue
        seen.add(message.id)
        body = message.content.replace("\n", "\n  ")
        blocks.append(
            "\n".join(
                [
                    f"message_id: {message.id}",
                    f"author: {message.author_name} <@{message.author_id}>",
                    f"timestamp: {ms_to_iso(message.timestamp)}",
                    f"was_replied: {str(message.responded_to).lower()}",
                    "content: |",
                    f"  {body}",
                ]
            )
        )
    return "\n---\n".join(blocks)


def response_output_instruction(delta_caps: dict[str, int] | None = None) -> str:
    caps = ", ".join(
        f"{metric}: ±{(delta_caps or {}).get(metric, DEFAULT_DELTA_BOUND)}" for metric in EMOTION_METRICS
    )
    example_send_at = (datetime.now(timezone.utc) + timedelta(hours=1)).isoformat(timespec="seconds")
    return "\n".join(
        [
            "You MUST output exactly one JSON object, wrapped in a single fenced code block using ```json ... ```.",
            "The top-level value MUST be a JSON object, NOT an array.",
            "Do NOT include any text before or after the code block.",
            "",
            "The JSON structure MUST follow this exact schema:",
            "```json",
            "{",
            '  "messages": [',
            '    {"sequence": 1, "delay_ms": 1200, "content": "..."}',
            "  ],",
            '  "emotion_delta": [',
            '    {"user_id": "...", "metric": "affinity", "delta": 3, "reason": "..."}',
            "  ],",
            '  "proactive_messages": [',
            f'    {{"id": "optional_existing_id", "send_at": "{example_send_at}", "content": "...", "reason": "context"}}',
            "  ],",
            '  "cancel_schedule_ids": ["abc12"]',
            "}",
            "```",
            "",
            "Rules:",
            "- `messages` MUST be a non-empty array with sequential `sequence` (starting at 1), "
            "non-negative `delay_ms`, and textual `content`.",
            "- `emotion_delta` is optional. Each entry requires `user_id`, `metric` "
            f"(affinity|annoyance|trust|curiosity), and an integer `delta` within these caps ({caps}).",
            "- `proactive_messages` is optional. Each entry must include `send_at` (ISO 8601 UTC) and `content`; "
            "include `id` if modifying an existing schedule.",
            "- `cancel_schedule_ids` is optional. Only include IDs that should be cancelled.",
        ]
    )


EVALUATION_OUTPUT_INSTRUCTION = (
    "Return a strict JSON object with keys `response_score` (float 0.0-1.0), `target_message_id` "
    "(string or null), `reason` (string), `should_respond` (boolean), optional `emotion_delta` array, "
    "optional `proactive_messages` array, and optional `cancel_schedule_ids` array. `emotion_delta` entries "
    "require `user_id`, `metric` (affinity|annoyance|trust|curiosity), `delta` (integer within [-12,12]), "
    "plus optional `reason`. `proactive_messages` entries allow `id` (existing schedule or omit for new), "
    "`send_at` (ISO 8601 UTC), `content`, and optional `reason`. Include `cancel_schedule_ids` only when "
    "scheduled items must be cancelled. Do not add text outside the JSON. Always keep the ```json ... ``` fencing."
)


def _persona_values(persona: PersonaConfig, bot_user_id: str) -> dict[str, str]:
    return {
        "PERSONA_NAME": persona.name,
        "PERSONA_DETAILS": persona.details,
        "BOT_MENTION": f"<@{bot_user_id}>",
        "BOT_USER_ID": bot_user_id,
    }


def build_response_prompt(
    *,
    persona: PersonaConfig,
    context_messages: list[ChatMessage],
    bot_user_id: str = "",
    language: str = "auto",
    fallback_language: str = "en",
    auto_detect: bool = True,
    target: ChatMessage | None = None,
    emotion_snapshots: list[EmotionSnapshot] | None = None,
    pending: list[ProactiveSummary] | None = None,
    delta_caps: dict[str, int] | None = None,
    temperature: float = 1.1,
    max_tokens: int = 8192,
) -> BuiltPrompt:
    bot_mention = f"<@{bot_user_id}>"
    values = _persona_values(persona, bot_user_id)
    values["LANGUAGE_INSTRUCTION"] = language_instruction(language, fallback_language, auto_detect)

    blocks = [render_template(persona.system_template, values)]
    focus = target.author_id if target else None
    for block in (
        user_mention_directory(context_messages),
        relationship_hints(emotion_snapshots or [], focus),
        target_block(target),
        selection_guidance(bot_mention),
        pending_block(pending or []),
    ):
        if block:
            blocks.append(block)

    messages: list[dict[str, Any]] = [{"role": "system", "content": "\n\n".join(blocks)}]
    messages.extend(conversation_turns(context_messages))
    messages.append({"role": "system", "content": response_output_instruction(delta_caps)})
    return BuiltPrompt(messages=messages, temperature=temperature, max_tokens=max_tokens)


def build_evaluation_prompt(
    *,
    persona: PersonaConfig,
    context_messages: list[ChatMessage],
    batch: list[ChatMessage],
    bot_user_id: str = "",
    lookback: int = 10,
    emotion_snapshots: list[EmotionSnapshot] | None = None,
    pending: list[ProactiveSummary] | None = None,
    effective_threshold: float | None = None,
    temperature: float = 0.8,
    max_tokens: int = 4096,
) -> BuiltPrompt:
    bot_mention = f"<@{bot_user_id}>"
    blocks = [
        render_template(persona.evaluation_template, _persona_values(persona, bot_user_id)),
        f"Only treat {bot_mention} (and literal references to the bot's own username) as mentions of the bot. "
        "Ignore other mentions entirely.",
    ]
    if effective_threshold is not None:
        blocks.append(f"A reply is warranted when response_score >= {effective_threshold:.2f}.")
    for block in (relationship_hints(emotion_snapshots or []), pending_block(pending or [])):
        if block:
            blocks.append(block)

    messages: list[dict[str, Any]] = [
        {"role": "system", "content": "\n\n".join(blocks)},
        {"role": "user", "name": "message_log", "content": evaluation_text(context_messages, batch, lookback)},
        {"role": "system", "content": EVALUATION_OUTPUT_INSTRUCTION},
    ]
    return BuiltPrompt(messages=messages, temperature=temperature, max_tokens=max_tokens)
