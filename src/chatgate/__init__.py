"""chatgate: compliance-aware conversation orchestration for LLM chat assistants."""

from __future__ import annotations

__version__ = "0.1.0"

from .audit import AuditDispatcher
from .backend_selector import BackendOutcome, BackendReply, BackendSelector, OutcomeKind
from .collaborators import (
    AuditEvent,
    AuditSink,
    ConversationRepository,
    Eligibility,
    EligibilityChecker,
    InMemoryAuditSink,
    InMemoryKnowledge,
    InMemoryLedger,
    InMemoryRepository,
    KnowledgeLookup,
    Ledger,
    MembershipDirectory,
    StaticEligibilityChecker,
    StaticMembershipDirectory,
)
from .compliance import Classification, ComplianceFilter, EscalationPolicy, FilterResult
from .config import EngineConfig
from .context_budget import BuiltContext, ContextBudgeter
from .errors import (
    BackendError,
    BillingError,
    ChatgateError,
    EligibilityError,
    FilterError,
    PersistenceError,
    ValidationError,
)
from .formatting import format_reply, paginate
from .models import (
    BackendMode,
    BackendState,
    BillingMode,
    ChatResult,
    Conversation,
    ConversationCategory,
    FilterStrictness,
    InboundMessage,
    Message,
    ResponseStyle,
    SessionInfo,
    UserPreferences,
)
from .orchestrator import ConversationOrchestrator
from .provider import (
    ChatBackend,
    ChatMessage,
    ChatRole,
    Completion,
    CompletionSettings,
    RunState,
    RunStatus,
    StubChatBackend,
    StubThreadBackend,
    ThreadBackend,
    TokenUsage,
)
from .session_store import Session, SessionStore
from .telemetry import EngineTracer, TelemetryConfig
from .token_budget import TiktokenCounter, estimate_tokens, truncate_to_tokens
from .usage_meter import BillingDecision, UsageMeter, estimate_cost

__all__ = [
    "AuditDispatcher",
    "AuditEvent",
    "AuditSink",
    "BackendError",
    "BackendMode",
    "BackendOutcome",
    "BackendReply",
    "BackendSelector",
    "BackendState",
    "BillingDecision",
    "BillingError",
    "BillingMode",
    "BuiltContext",
    "ChatBackend",
    "ChatMessage",
    "ChatResult",
    "ChatRole",
    "ChatgateError",
    "Classification",
    "Completion",
    "CompletionSettings",
    "ComplianceFilter",
    "ContextBudgeter",
    "Conversation",
    "ConversationCategory",
    "ConversationOrchestrator",
    "ConversationRepository",
    "Eligibility",
    "EligibilityChecker",
    "EligibilityError",
    "EngineConfig",
    "EngineTracer",
    "EscalationPolicy",
    "FilterError",
    "FilterResult",
    "FilterStrictness",
    "InMemoryAuditSink",
    "InMemoryKnowledge",
    "InMemoryLedger",
    "InMemoryRepository",
    "InboundMessage",
    "KnowledgeLookup",
    "Ledger",
    "MembershipDirectory",
    "Message",
    "OutcomeKind",
    "PersistenceError",
    "ResponseStyle",
    "RunState",
    "RunStatus",
    "Session",
    "SessionInfo",
    "SessionStore",
    "StaticEligibilityChecker",
    "StaticMembershipDirectory",
    "StubChatBackend",
    "StubThreadBackend",
    "TelemetryConfig",
    "ThreadBackend",
    "TiktokenCounter",
    "TokenUsage",
    "UsageMeter",
    "UserPreferences",
    "ValidationError",
    "estimate_cost",
    "estimate_tokens",
    "format_reply",
    "paginate",
    "truncate_to_tokens",
]
