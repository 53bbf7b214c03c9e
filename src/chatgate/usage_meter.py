"""Usage meter: billing-mode choice, per-model cost and clamped settlement."""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass

from .collaborators import Ledger, MembershipDirectory
from .errors import BillingError
from .models import BillingMode, UserPreferences
from .provider import TokenUsage
from .telemetry import trace_settlement

logger = logging.getLogger(__name__)

# (model_prefix, input_cents_per_1K, output_cents_per_1K)
# Longest prefix first so "gpt-4-turbo" wins over "gpt-4".
MODEL_RATES: list[tuple[str, float, float]] = [
    ("gpt-4-turbo", 1.0, 3.0),
    ("gpt-4.1-mini", 0.5, 1.5),
    ("gpt-4", 3.0, 6.0),
    ("gpt-3.5-turbo", 0.05, 0.15),
]

DEFAULT_RATE: tuple[float, float] = (1.0, 3.0)


def get_model_rate(model: str) -> tuple[float, float]:
    """Return (input, output) cents per 1K tokens, the default rate for unknown models."""
    lower = (model or "").lower()
    for prefix, input_rate, output_rate in MODEL_RATES:
        if lower.startswith(prefix):
            return (input_rate, output_rate)
    return DEFAULT_RATE


def estimate_cost(tokens_in: int, tokens_out: int, model: str) -> int:
    """Whole-unit cost of a generation, rounded up."""
    input_rate, output_rate = get_model_rate(model)
    raw = (tokens_in / 1000) * input_rate + (tokens_out / 1000) * output_rate
    return math.ceil(raw)


@dataclass(frozen=True)
class BillingDecision:
    mode: BillingMode
    credential: str

    @property
    def deducts(self) -> bool:
        return self.mode is BillingMode.CREDIT


class UsageMeter:
    """Chooses who pays for a generation and settles it against the ledger."""

    def __init__(
        self,
        ledger: Ledger,
        shared_credential: str = "",
        min_balance: int = 10,
        membership: MembershipDirectory | None = None,
    ) -> None:
        self._ledger = ledger
        self._shared_credential = shared_credential
        self.min_balance = min_balance
        self._membership = membership

    def choose_billing_mode(self, preferences: UserPreferences, is_vip: bool) -> BillingDecision:
        if is_vip:
            return BillingDecision(BillingMode.VIP, self._shared_credential)
        if preferences.use_own_api_key and preferences.own_api_key:
            return BillingDecision(BillingMode.SELF_PAY, preferences.own_api_key)
        return BillingDecision(BillingMode.CREDIT, self._shared_credential)

    async def resolve(self, user_id: str, guild_id: str, preferences: UserPreferences) -> BillingDecision:
        """Look up VIP status and choose a mode; lookup failures fall back to credit."""
        is_vip = False
        if self._membership is not None:
            try:
                is_vip = await self._membership.is_vip(user_id, guild_id)
            except Exception as exc:  # noqa: BLE001
                logger.warning("VIP lookup failed for user %s, billing as credit: %s", user_id, exc)
                return BillingDecision(BillingMode.CREDIT, self._shared_credential)
        return self.choose_billing_mode(preferences, is_vip)

    async def preflight(self, user_id: str, guild_id: str, decision: BillingDecision) -> int | None:
        """Reject credit-mode users below the minimum balance.

        Returns the balance seen (``None`` for non-credit modes).
        """
        if not decision.deducts:
            return None
        try:
            balance = await self._ledger.get_balance(user_id, guild_id)
        except Exception as exc:  # noqa: BLE001
            logger.error("Balance lookup failed for user %s: %s", user_id, exc)
            raise BillingError(
                f"balance unavailable for user {user_id}: {exc}",
                required=self.min_balance,
                user_message="Your credit balance could not be checked right now. Please try again shortly.",
            ) from exc
        if balance < self.min_balance:
            msg = f"balance {balance} below minimum {self.min_balance} for user {user_id}"
            raise BillingError(
                msg,
                balance=balance,
                required=self.min_balance,
                user_message=(
                    f"Insufficient credits to use the AI assistant. You need at least "
                    f"{self.min_balance} credits (current balance: {balance})."
                ),
            )
        return balance

    def cost_of(self, usage: TokenUsage, model: str) -> int:
        return estimate_cost(usage.prompt_tokens, usage.completion_tokens, model)

    async def settle(self, user_id: str, guild_id: str, cost: int, decision: BillingDecision) -> int:
        """Deduct ``min(balance, cost)`` in credit mode and return what was taken.

        Ledger failures are logged and reported as a zero deduction.
        """
        if not decision.deducts or cost <= 0:
            return 0
        with trace_settlement(decision.mode) as span:
            try:
                deducted = await self._ledger.deduct(user_id, guild_id, cost)
            except Exception as exc:  # noqa: BLE001
                logger.error("Ledger deduction of %d failed for user %s: %s", cost, user_id, exc)
                span.set_attribute("billing.error", type(exc).__name__)
                return 0
            span.set_attribute("billing.cost", cost)
            span.set_attribute("billing.deducted", deducted)
        if deducted < cost:
            logger.info("Clamped charge for user %s: cost %d, deducted %d", user_id, cost, deducted)
        return deducted
