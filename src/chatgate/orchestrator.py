"""Conversation orchestrator: one inbound message in, one structured result out.

``handle_message`` runs the pipeline: eligibility, billing pre-flight,
conversation/session load, classification, context build, backend dispatch,
output filtering, settlement and response shaping. Generation is bounded by
the request timeout; once a reply exists the remaining steps always complete
so a generated response is never dropped.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass
from typing import Any

from pydantic import ValidationError as PydanticValidationError

from .audit import AuditDispatcher
from .backend_selector import BackendReply, BackendSelector
from .collaborators import (
    AuditEvent,
    AuditSink,
    ConversationRepository,
    EligibilityChecker,
    InMemoryAuditSink,
    InMemoryLedger,
    InMemoryRepository,
    KnowledgeLookup,
    Ledger,
    MembershipDirectory,
    StaticEligibilityChecker,
)
from .compliance import Classification, ComplianceFilter, EscalationPolicy, FilterResult
from .config import EngineConfig
from .context_budget import BuiltContext, ContextBudgeter
from .errors import BackendError, BillingError, EligibilityError, PersistenceError, ValidationError
from .formatting import cap_length, format_reply, paginate
from .models import (
    ChatResult,
    Conversation,
    ConversationCategory,
    FilterStrictness,
    InboundMessage,
    Message,
    SessionInfo,
    UserPreferences,
)
from .prompts import (
    build_system_prompt,
    completion_settings,
    follow_up_suggestions,
    knowledge_area,
    suggest_reactions,
)
from .provider import ChatBackend, ChatMessage, ChatRole, ThreadBackend
from .session_store import KeyedLocks, Session, SessionStore
from .telemetry import get_tracer, trace_compliance_check, trace_handle_message
from .token_budget import get_token_counter
from .usage_meter import BillingDecision, UsageMeter

logger = logging.getLogger(__name__)

# Audit actions
ACTION_INTERACTION = "ai_chat_interaction"
ACTION_ERROR = "ai_chat_error"
ACTION_CLEARED = "ai_conversation_cleared"
ACTION_PREFERENCES = "ai_preferences_updated"


@dataclass
class _Turn:
    """Everything the post-generation steps need."""

    request: InboundMessage
    preferences: UserPreferences
    decision: BillingDecision
    conversation: Conversation
    session: Session
    classification: Classification
    escalated: bool
    context: BuiltContext
    reply: BackendReply


class ConversationOrchestrator:
    """Composes compliance, sessions, context, backends and billing per request."""

    def __init__(
        self,
        chat_backend: ChatBackend,
        config: EngineConfig | None = None,
        *,
        thread_backend: ThreadBackend | None = None,
        repository: ConversationRepository | None = None,
        ledger: Ledger | None = None,
        eligibility: EligibilityChecker | None = None,
        membership: MembershipDirectory | None = None,
        knowledge: KnowledgeLookup | None = None,
        audit_sink: AuditSink | None = None,
        session_store: SessionStore | None = None,
        selector: BackendSelector | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.config = config or EngineConfig()
        cfg = self.config
        self._clock = clock
        self._repository = repository if repository is not None else InMemoryRepository()
        self._ledger = ledger if ledger is not None else InMemoryLedger()
        self._eligibility = eligibility if eligibility is not None else StaticEligibilityChecker()
        self._knowledge = knowledge
        self._compliance = ComplianceFilter(EscalationPolicy(cfg.escalation_policy))
        self._count_tokens = get_token_counter(cfg.tokenizer)
        self._budgeter = ContextBudgeter(self._count_tokens)
        self.sessions = session_store or SessionStore(
            timeout=cfg.session_timeout,
            max_turns=cfg.session_max_turns,
            window=cfg.session_window,
        )
        self.selector = selector or BackendSelector(
            chat_backend,
            thread_backend,
            thread_mode_enabled=cfg.thread_mode_enabled,
            assistant_model=cfg.assistant_model,
            poll_interval=cfg.poll_interval,
            poll_max_wait=cfg.poll_max_wait,
        )
        self.meter = UsageMeter(
            self._ledger,
            shared_credential=cfg.api_key,
            min_balance=cfg.min_credit_balance,
            membership=membership,
        )
        # guards conversation create/read-modify-write per (user, guild, channel, category)
        self._conversation_locks = KeyedLocks()
        self.audit = AuditDispatcher(
            audit_sink if audit_sink is not None else InMemoryAuditSink(),
            maxsize=cfg.audit_queue_size,
        )

    # -- lifecycle ------------------------------------------------------------

    def start(self) -> None:
        """Start the session sweeper and the audit worker (needs a running loop)."""
        self.sessions.start_sweeper(self.config.sweep_interval)
        self.audit.start()

    async def stop(self) -> None:
        await self.sessions.stop_sweeper()
        await self.audit.stop()
        get_tracer().shutdown()

    # -- main entry point -------------------------------------------------------

    async def handle_message(self, request: InboundMessage | Mapping[str, Any]) -> ChatResult:
        """Process one user message.

        Raises :class:`~chatgate.errors.ValidationError` for malformed input;
        every other failure comes back as an unsuccessful :class:`ChatResult`.
        """
        req = self._validate(request)
        with trace_handle_message(req.user_id, req.channel_id, req.category) as span:
            try:
                async with asyncio.timeout(self.config.request_timeout):
                    outcome = await self._generate(req)
            except TimeoutError:
                logger.error(
                    "Request for user %s in channel %s timed out after %gs",
                    req.user_id,
                    req.channel_id,
                    self.config.request_timeout,
                )
                err = BackendError("request timed out", code="timeout")
                self._audit_error(req, err)
                return ChatResult.failure(str(err), "timeout", err.user_message)

            if isinstance(outcome, ChatResult):
                span.set_attribute("chat.success", outcome.success)
                return outcome
            result = await self._finish(outcome)
            span.set_attribute("chat.success", True)
            return result

    @staticmethod
    def _validate(request: InboundMessage | Mapping[str, Any]) -> InboundMessage:
        if isinstance(request, InboundMessage):
            return request
        try:
            return InboundMessage.model_validate(dict(request))
        except PydanticValidationError as exc:
            raise ValidationError(f"invalid request: {exc}") from exc

    # -- steps 2-8: up to a generated reply ------------------------------------

    async def _generate(self, req: InboundMessage) -> _Turn | ChatResult:
        preferences = await self._load_preferences(req.user_id, req.guild_id)

        # 2. category gate
        verified = False
        if req.category.is_restricted:
            if not preferences.restricted_assistance_enabled:
                return ChatResult.failure(
                    "restricted-topic assistance disabled in preferences",
                    "assistance_disabled",
                    "Cannabis-topic assistance is turned off in your AI settings.",
                )
            gate = await self._check_eligibility(req)
            if gate is not None:
                return gate
            verified = True

        # 3. billing
        decision = await self.meter.resolve(req.user_id, req.guild_id, preferences)
        try:
            await self.meter.preflight(req.user_id, req.guild_id, decision)
        except BillingError as exc:
            logger.info("Billing pre-flight rejected user %s: %s", req.user_id, exc)
            return ChatResult.failure(
                str(exc),
                "insufficient_credit",
                exc.user_message,
                usage={"balance": exc.balance, "required": exc.required},
            )

        # 4. durable conversation
        conversation = await self._load_conversation(req)

        # 5. classification may widen the gate for general conversations
        classification = self._compliance.classify(req.text)
        escalated = False
        if not req.category.is_restricted and self._compliance.requires_age_gate(
            req.category, classification
        ):
            escalated = True
            if not preferences.restricted_assistance_enabled:
                return ChatResult.failure(
                    "restricted-topic assistance disabled in preferences",
                    "assistance_disabled",
                    "Cannabis-topic assistance is turned off in your AI settings.",
                )
            if not verified:
                gate = await self._check_eligibility(req)
                if gate is not None:
                    return gate
            conversation.age_gated = True

        # 6. user turn: session, then durable log
        session, snapshot = await self.sessions.append_user_turn(req.user_id, req.channel_id, req.text)
        history = await self._history_for_context(conversation, snapshot, preferences)
        restricted = req.category.is_restricted or classification.is_restricted_subject
        conversation = await self._commit_conversation(conversation)
        await self._persist(
            "save user message",
            self._repository.save_message(
                Message(
                    conversation_id=conversation.id,
                    user_id=req.user_id,
                    role=ChatRole.USER,
                    content=req.text,
                    restricted_content=restricted,
                    token_count=self._count_tokens(req.text),
                    has_attachments=bool(req.image_urls),
                    created_at=self._clock(),
                )
            ),
        )

        # 7. context
        snippets = await self._knowledge_snippets(req, restricted)
        context = self._budgeter.build_context(
            build_system_prompt(req.category, preferences),
            history,
            snippets,
            self.config.context_budget_tokens,
        )
        if context.truncated:
            logger.warning("Latest message from user %s truncated to fit the context budget", req.user_id)

        # 8. dispatch
        settings = completion_settings(req.category, preferences, self.config)
        outcome = await self.selector.respond(
            conversation,
            context.messages,
            context.messages[-1].content,
            settings,
            decision.credential,
            req.image_attachments(),
        )
        # records any mode downgrade even when generation failed
        conversation = await self._commit_conversation(conversation)

        if not outcome.ok or outcome.reply is None:
            err = outcome.error or BackendError("no reply produced")
            self._audit_error(req, err, conversation_id=conversation.id)
            return ChatResult.failure(
                str(err),
                "service_error",
                err.user_message,
                usage={"backend_error": err.code},
                conversation_id=conversation.id,
            )

        return _Turn(
            request=req,
            preferences=preferences,
            decision=decision,
            conversation=conversation,
            session=session,
            classification=classification,
            escalated=escalated,
            context=context,
            reply=outcome.reply,
        )

    # -- steps 9-11: filter, log, settle, respond ----------------------------

    async def _finish(self, turn: _Turn) -> ChatResult:
        req, prefs, reply, conversation = turn.request, turn.preferences, turn.reply, turn.conversation

        # 9. filter, assistant turn, durable log
        strictness = prefs.filter_strictness
        if not prefs.include_disclaimers and strictness is not FilterStrictness.STRICT:
            strictness = FilterStrictness.MINIMAL
        with trace_compliance_check(req.category):
            # cap before filtering so appended disclaimers survive to the user
            capped = cap_length(reply.text, prefs.max_response_length)
            filtered: FilterResult = self._compliance.filter_output(capped, req.category, strictness)
        session = await self.sessions.append(turn.session, ChatRole.ASSISTANT, filtered.text)

        cost = self.meter.cost_of(reply.usage, reply.model)
        restricted = req.category.is_restricted or turn.classification.is_restricted_subject
        await self._persist(
            "save assistant message",
            self._repository.save_message(
                Message(
                    conversation_id=conversation.id,
                    user_id=req.user_id,
                    role=ChatRole.ASSISTANT,
                    content=filtered.text,
                    restricted_content=restricted,
                    token_count=reply.usage.completion_tokens,
                    model=reply.model,
                    backend_mode=reply.mode_used,
                    compliance_filtered=filtered.was_modified,
                    compliance_issues=tuple(filtered.issues),
                    cost=cost,
                    billing_mode=turn.decision.mode,
                    created_at=self._clock(),
                )
            ),
        )

        # 10. settle, then counters
        deducted = await self.meter.settle(req.user_id, req.guild_id, cost, turn.decision)
        conversation = await self._commit_conversation(conversation, tokens=reply.usage.total_tokens, messages=2)

        self.audit.submit(
            AuditEvent(
                action=ACTION_INTERACTION,
                user_id=req.user_id,
                guild_id=req.guild_id,
                details={
                    "conversation_id": conversation.id,
                    "category": req.category.value,
                    "model": reply.model,
                    "backend_mode": reply.mode_used.value,
                    "fell_back": reply.fell_back,
                    "tokens": reply.usage.total_tokens,
                    "cost": cost,
                    "deducted": deducted,
                    "billing_mode": turn.decision.mode.value,
                    "compliance_issues": list(filtered.issues),
                },
                severity="medium" if filtered.was_modified else "low",
                compliance_flag=restricted,
            )
        )

        # 11. response
        pages = paginate(
            format_reply(filtered.text, max_length=None, add_footer=prefs.include_disclaimers),
            self.config.page_limit,
        )
        return ChatResult(
            success=True,
            text=pages[0],
            additional_pages=pages[1:],
            compliance={
                "restricted_content": restricted,
                "age_gated": conversation.age_gated,
                "escalated": turn.escalated,
                "matched_terms": list(turn.classification.matched_terms),
                "filtered": filtered.was_modified,
                "issues": list(filtered.issues),
                "context_truncated": turn.context.truncated,
            },
            usage={
                "prompt_tokens": reply.usage.prompt_tokens,
                "completion_tokens": reply.usage.completion_tokens,
                "total_tokens": reply.usage.total_tokens,
                "model": reply.model,
                "backend_mode": reply.mode_used.value,
                "fell_back": reply.fell_back,
                "billing_mode": turn.decision.mode.value,
                "cost": cost,
                "deducted": deducted,
            },
            session=SessionInfo(
                turn_count=session.turn_count,
                max_turns=self.sessions.max_turns,
                seconds_remaining=self.sessions.seconds_remaining(session),
            ),
            suggestions={
                "follow_up": follow_up_suggestions(req.category, filtered.text, self._compliance),
                "reactions": suggest_reactions(filtered.text, self._compliance),
            },
            conversation_id=conversation.id,
        )

    # -- helpers --------------------------------------------------------------

    async def _check_eligibility(self, req: InboundMessage) -> ChatResult | None:
        """``None`` when eligible, otherwise the needs-verification result."""
        try:
            result = await self._eligibility.verify(req.user_id, req.guild_id)
            eligible, reason = result.eligible, result.reason
        except Exception as exc:  # noqa: BLE001
            logger.error("Eligibility check failed for user %s; denying: %s", req.user_id, exc)
            eligible, reason = False, "verification_unavailable"
        if eligible:
            return None
        err = EligibilityError(f"user {req.user_id} not eligible: {reason}", reason=reason)
        logger.info("%s", err)
        return ChatResult(
            success=False,
            needs_verification=True,
            error=str(err),
            error_code="needs_verification",
            user_message=err.user_message,
        )

    async def _load_preferences(self, user_id: str, guild_id: str) -> UserPreferences:
        try:
            return await self._repository.get_or_create_preferences(user_id, guild_id)
        except Exception as exc:  # noqa: BLE001
            logger.error("Loading preferences for user %s failed; using defaults: %s", user_id, exc)
            return UserPreferences(user_id=user_id, guild_id=guild_id)

    @staticmethod
    def _scope_key(
        user_id: str, guild_id: str, channel_id: str, category: ConversationCategory
    ) -> tuple[str, str, str, str]:
        return (user_id, guild_id, channel_id, category.value)

    async def _load_conversation(self, req: InboundMessage) -> Conversation:
        """Active conversation for the scope, or a new one if none is usable.

        A new conversation is stored before the scope lock is released so an
        overlapping first message joins it instead of starting another.
        """
        key = self._scope_key(req.user_id, req.guild_id, req.channel_id, req.category)
        async with self._conversation_locks.hold(key):
            now = self._clock()
            try:
                existing = await self._repository.get_active_conversation(
                    req.user_id, req.guild_id, req.channel_id, req.category
                )
            except Exception as exc:  # noqa: BLE001
                logger.error("Loading conversation for user %s failed; starting new: %s", req.user_id, exc)
                existing = None

            if existing is not None:
                reason = None
                if existing.is_idle(now, self.config.conversation_idle_timeout):
                    reason = "idle_timeout"
                elif existing.exceeds_caps(
                    self.config.conversation_max_messages, self.config.conversation_max_tokens
                ):
                    reason = "limit_reached"
                if reason is None:
                    return existing
                existing.archive(reason, now)
                await self._persist("archive conversation", self._repository.upsert_conversation(existing))

            conversation = Conversation(
                user_id=req.user_id,
                guild_id=req.guild_id,
                channel_id=req.channel_id,
                category=req.category,
                started_at=now,
                last_activity_at=now,
            )
            await self._persist("create conversation", self._repository.upsert_conversation(conversation))
            return conversation

    async def _commit_conversation(
        self, conversation: Conversation, *, tokens: int = 0, messages: int = 0
    ) -> Conversation:
        """Merge this request's copy into the stored record and write it back.

        Runs under the scope lock against a fresh read, so counters from
        overlapping turns add up and the backend state never moves backwards.
        Returns the record as stored.
        """
        key = self._scope_key(
            conversation.user_id, conversation.guild_id, conversation.channel_id, conversation.category
        )
        async with self._conversation_locks.hold(key):
            try:
                stored = await self._repository.get_conversation(conversation.id)
            except Exception as exc:  # noqa: BLE001
                logger.warning("Re-reading conversation %s failed; writing local copy: %s", conversation.id, exc)
                stored = None
            if stored is None:
                stored = conversation
            else:
                stored.absorb(conversation)

            if messages:
                now = self._clock()
                stored.record_turn(tokens, now, messages=messages)
                if not stored.archived and stored.exceeds_caps(
                    self.config.conversation_max_messages, self.config.conversation_max_tokens
                ):
                    logger.info("Conversation %s reached its limits; archiving", stored.id)
                    stored.archive("limit_reached", now)
            await self._persist("upsert conversation", self._repository.upsert_conversation(stored))
        return stored

    async def _history_for_context(
        self,
        conversation: Conversation,
        snapshot: list[ChatMessage],
        preferences: UserPreferences,
    ) -> list[ChatMessage]:
        """Session turns, rehydrated from the durable log when the session is fresh."""
        if not preferences.history_enabled:
            return snapshot[-1:]
        if len(snapshot) > 1 or conversation.message_count == 0:
            return snapshot
        try:
            stored = await self._repository.get_recent_messages(conversation.id, self.config.history_limit)
        except Exception as exc:  # noqa: BLE001
            logger.warning("Could not load stored history for %s: %s", conversation.id, exc)
            return snapshot
        prior = [ChatMessage(role=m.role, content=m.content) for m in stored]
        return [*prior, *snapshot]

    async def _knowledge_snippets(self, req: InboundMessage, restricted: bool) -> list[str]:
        if self._knowledge is None or not restricted or self.config.knowledge_limit == 0:
            return []
        try:
            return await self._knowledge.search(
                knowledge_area(req.category), req.text, self.config.knowledge_limit
            )
        except Exception as exc:  # noqa: BLE001
            logger.warning("Knowledge lookup failed: %s", exc)
            return []

    async def _persist(self, what: str, write: Awaitable[None]) -> bool:
        """Await a repository write; failures and stalls are logged, not raised."""
        try:
            async with asyncio.timeout(self.config.persistence_timeout):
                await write
        except Exception as exc:  # noqa: BLE001
            err = PersistenceError(f"{what} failed: {exc!r}")
            logger.error("%s", err)
            return False
        return True

    def _audit_error(self, req: InboundMessage, err: BackendError, conversation_id: str | None = None) -> None:
        self.audit.submit(
            AuditEvent(
                action=ACTION_ERROR,
                user_id=req.user_id,
                guild_id=req.guild_id,
                details={
                    "conversation_id": conversation_id,
                    "category": req.category.value,
                    "error_code": err.code,
                    "error": str(err),
                },
                severity="high",
            )
        )

    # -- other operations -------------------------------------------------------

    async def clear_conversation(self, user_id: str, guild_id: str, channel_id: str) -> dict[str, Any]:
        """Drop the session and archive active conversations in the channel."""
        session_cleared = await self.sessions.clear(user_id, channel_id)
        archived = 0
        now = self._clock()
        for category in ConversationCategory:
            async with self._conversation_locks.hold(self._scope_key(user_id, guild_id, channel_id, category)):
                try:
                    conversation = await self._repository.get_active_conversation(
                        user_id, guild_id, channel_id, category
                    )
                except Exception as exc:  # noqa: BLE001
                    logger.error("Loading %s conversation for clear failed: %s", category, exc)
                    continue
                if conversation is None:
                    continue
                conversation.archive("user_cleared", now)
                if await self._persist("archive conversation", self._repository.upsert_conversation(conversation)):
                    archived += 1

        self.audit.submit(
            AuditEvent(
                action=ACTION_CLEARED,
                user_id=user_id,
                guild_id=guild_id,
                details={"channel_id": channel_id, "archived": archived, "session_cleared": session_cleared},
            )
        )
        return {"session_cleared": session_cleared, "conversations_archived": archived}

    async def get_preferences(self, user_id: str, guild_id: str) -> UserPreferences:
        return await self._load_preferences(user_id, guild_id)

    async def update_preferences(self, user_id: str, guild_id: str, **changes: Any) -> UserPreferences:
        """Validated partial update. Invalid values raise ``ValidationError``."""
        unknown = set(changes) - (set(UserPreferences.model_fields) - {"user_id", "guild_id"})
        if unknown:
            raise ValidationError(f"unknown preference(s): {', '.join(sorted(unknown))}")
        current = await self._repository.get_or_create_preferences(user_id, guild_id)
        try:
            updated = UserPreferences.model_validate({**current.model_dump(), **changes})
        except PydanticValidationError as exc:
            raise ValidationError(f"invalid preferences: {exc}") from exc
        await self._save_preferences(updated)
        self._audit_preferences(user_id, guild_id, sorted(changes))
        return updated

    async def reset_preferences(self, user_id: str, guild_id: str) -> UserPreferences:
        prefs = await self._repository.get_or_create_preferences(user_id, guild_id)
        prefs.reset()
        await self._save_preferences(prefs)
        self._audit_preferences(user_id, guild_id, ["reset"])
        return prefs

    async def _save_preferences(self, prefs: UserPreferences) -> None:
        try:
            await self._repository.save_preferences(prefs)
        except Exception as exc:
            raise PersistenceError(f"saving preferences failed: {exc}") from exc

    def _audit_preferences(self, user_id: str, guild_id: str, fields: list[str]) -> None:
        self.audit.submit(
            AuditEvent(
                action=ACTION_PREFERENCES,
                user_id=user_id,
                guild_id=guild_id,
                details={"fields": fields},
            )
        )

    async def get_stats(self, user_id: str, guild_id: str) -> dict[str, Any]:
        """Conversation totals, preferences (credential redacted) and balance."""
        try:
            stats = await self._repository.get_user_stats(user_id, guild_id)
        except Exception as exc:  # noqa: BLE001
            logger.error("Loading stats for user %s failed: %s", user_id, exc)
            stats = {}
        try:
            balance: int | None = await self._ledger.get_balance(user_id, guild_id)
        except Exception as exc:  # noqa: BLE001
            logger.error("Loading balance for user %s failed: %s", user_id, exc)
            balance = None
        prefs = await self._load_preferences(user_id, guild_id)
        return {
            **stats,
            "preferences": prefs.model_dump(mode="json", exclude={"own_api_key"}),
            "balance": balance,
            "active_sessions": len(self.sessions),
        }
