"""System prompts, per-category generation settings and follow-up suggestions."""

from __future__ import annotations

from .compliance import ComplianceFilter
from .config import EngineConfig
from .models import ConversationCategory, FilterStrictness, ResponseStyle, UserPreferences
from .provider import CompletionSettings

COMPLIANCE_PREAMBLE = """\
You are a helpful cannabis education assistant for an adult community. You provide \
accurate, educational information about cannabis while maintaining strict legal compliance.

IMPORTANT COMPLIANCE RULES:
- All information is for educational purposes only
- Never provide medical advice; always recommend consulting healthcare professionals
- Never facilitate commercial cannabis transactions
- Focus on New Jersey cannabis laws and regulations
- Always emphasize responsible adult use (21+)
- Include appropriate disclaimers for safety and legal compliance"""

_PERSONAS: dict[ConversationCategory, str] = {
    ConversationCategory.GENERAL: "Provide general cannabis education and information.",
    ConversationCategory.CANNABIS_EDUCATION: (
        "Focus on educational cannabis content including plant biology, history, and general "
        "effects. Always include educational disclaimers."
    ),
    ConversationCategory.STRAIN_ADVICE: (
        "Provide strain information including genetics, typical effects, and growing "
        "characteristics. Always remind users that effects vary by individual and to start "
        "with small amounts."
    ),
    ConversationCategory.LEGAL_INFO: (
        "Provide general information about New Jersey cannabis laws and regulations. Always "
        "clarify that this is not legal advice and recommend consulting legal professionals."
    ),
    ConversationCategory.GROW_TIPS: (
        "Provide cultivation education including growing techniques, equipment, and best "
        "practices. Always emphasize legal compliance and following local laws."
    ),
    ConversationCategory.CULTIVATION_ADVICE: (
        "Provide detailed home-cultivation guidance within New Jersey's personal limits. "
        "Always emphasize legal compliance and following local laws."
    ),
}

_STYLE_LINES: dict[ResponseStyle, str] = {
    ResponseStyle.EDUCATIONAL: "Focus on educational content with detailed explanations and learning opportunities.",
    ResponseStyle.CONVERSATIONAL: "Use a friendly, conversational tone while maintaining accuracy.",
    ResponseStyle.TECHNICAL: "Provide technical, detailed responses with scientific accuracy.",
}

_VERIFIED_NOTE = (
    "This conversation requires 21+ age verification. The user has been verified as 21 or older."
)
_STRICT_LINE = "Use strict content filtering and include comprehensive disclaimers."
_CLOSING = "Always be helpful, educational, and compliant with cannabis laws and community guidelines."
_THREAD_COMPLIANCE = (
    "This is a cannabis-related conversation. Ensure all responses comply with cannabis "
    "regulations and include appropriate disclaimers."
)
_THREAD_GENERAL = "Never provide medical advice and never facilitate commercial cannabis transactions."

_TEMPERATURES: dict[ConversationCategory, float] = {
    ConversationCategory.LEGAL_INFO: 0.3,
    ConversationCategory.STRAIN_ADVICE: 0.5,
    ConversationCategory.CANNABIS_EDUCATION: 0.5,
    ConversationCategory.GROW_TIPS: 0.6,
    ConversationCategory.CULTIVATION_ADVICE: 0.6,
}
DEFAULT_TEMPERATURE = 0.7


def build_system_prompt(category: ConversationCategory, preferences: UserPreferences) -> str:
    """Compliance preamble, persona, then style and strictness lines."""
    parts = [COMPLIANCE_PREAMBLE, _PERSONAS[category]]
    if category.is_restricted:
        parts.append(_VERIFIED_NOTE)
    parts.append(_STYLE_LINES[preferences.response_style])
    if preferences.filter_strictness is FilterStrictness.STRICT:
        parts.append(_STRICT_LINE)
    parts.append(_CLOSING)
    return "\n\n".join(parts)


def assistant_instructions(category: ConversationCategory, preferences: UserPreferences) -> str:
    """Per-run instructions for thread mode, where the assistant owns the base prompt."""
    compliance = _THREAD_COMPLIANCE if category.is_restricted else _THREAD_GENERAL
    lines = [compliance, _PERSONAS[category], _STYLE_LINES[preferences.response_style]]
    if preferences.filter_strictness is FilterStrictness.STRICT:
        lines.append(_STRICT_LINE)
    lines.append(f"Keep the answer under {preferences.max_response_length} characters.")
    return " ".join(lines)


def completion_settings(
    category: ConversationCategory,
    preferences: UserPreferences,
    config: EngineConfig,
) -> CompletionSettings:
    return CompletionSettings(
        model=config.chat_model,
        temperature=_TEMPERATURES.get(category, DEFAULT_TEMPERATURE),
        max_tokens=min(preferences.max_response_length // 4, config.max_response_tokens),
        instructions=assistant_instructions(category, preferences),
    )


def knowledge_area(category: ConversationCategory) -> str:
    """Knowledge-base area searched for a conversation category."""
    if category is ConversationCategory.STRAIN_ADVICE:
        return "strains"
    if category in (ConversationCategory.GROW_TIPS, ConversationCategory.CULTIVATION_ADVICE):
        return "cultivation"
    if category is ConversationCategory.LEGAL_INFO:
        return "legal"
    return "general"


# ---------------------------------------------------------------------------
# Suggestions
# ---------------------------------------------------------------------------

_FOLLOW_UPS: dict[ConversationCategory, list[str]] = {
    ConversationCategory.STRAIN_ADVICE: [
        "Ask about growing this strain",
        "Get cultivation tips",
        "Learn about similar strains",
    ],
    ConversationCategory.GROW_TIPS: ["Ask about nutrients", "Get harvest advice", "Learn about pest control"],
    ConversationCategory.CULTIVATION_ADVICE: [
        "Ask about nutrients",
        "Get harvest advice",
        "Learn about pest control",
    ],
    ConversationCategory.LEGAL_INFO: [
        "Ask about cultivation limits",
        "Learn about dispensary laws",
        "Get compliance help",
    ],
}

_MAX_SUGGESTIONS = 3


def follow_up_suggestions(
    category: ConversationCategory,
    response: str,
    classifier: ComplianceFilter,
) -> list[str]:
    suggestions = _FOLLOW_UPS.get(category)
    if suggestions is None:
        if classifier.classify(response).is_restricted_subject:
            suggestions = ["Get more cannabis info", "Ask follow-up questions", "Learn about safety"]
        else:
            suggestions = ["Ask follow-up questions", "Get more information", "Change topic"]
    return list(suggestions[:_MAX_SUGGESTIONS])


_REACTION_KEYWORDS: list[tuple[tuple[str, ...], str]] = [
    (("help", "assist"), "🤝"),
    (("learn", "education"), "📚"),
    (("legal", "law"), "⚖️"),
    (("grow", "cultivation"), "🌱"),
]


def suggest_reactions(response: str, classifier: ComplianceFilter) -> list[str]:
    reactions: list[str] = []
    if classifier.classify(response).is_restricted_subject:
        reactions.append("🌿")
    lower = response.lower()
    for keywords, emoji in _REACTION_KEYWORDS:
        if any(k in lower for k in keywords):
            reactions.append(emoji)
    reactions.append("👍")
    return reactions
