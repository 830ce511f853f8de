"""
Silence/timeout escalation.

The gateway reports every recognition timeout with the silence counter it was
handed on the previous round-trip. The ladder has three rungs:

    0  normal listening, recognition re-armed silently
    1  gentle prompt ("Hey, are you there?") and a longer gather
    2+ graceful closing line and hangup, no further gather

Concurrent redirects for the same call can report the same counter twice.
The registry is the tie-breaker: when it has already recorded a rung at or
above the requested one, the duplicate is answered with the same decision and
no second event is recorded.
"""

from dataclasses import dataclass
from typing import Optional

from ..logging_config import get_logger
from .call_registry import CallRegistry
from .instructions import GatewayInstruction
from .models import SilenceKind

logger = get_logger(__name__)

DEFAULT_CHECK_IN_PROMPT = "Hey, are you there?"
DEFAULT_SILENCE_CLOSING_LINE = "It seems like now might not be a good time. Thanks for your time, and have a great day!"


@dataclass
class SilenceDecision:
    count: int
    kind: Optional[SilenceKind]
    instruction: GatewayInstruction
    duplicate: bool = False

    @property
    def ends_call(self) -> bool:
        return self.kind is SilenceKind.GRACEFUL_END


class SilenceEscalator:
    def __init__(
        self,
        registry: CallRegistry,
        check_in_prompt: str = DEFAULT_CHECK_IN_PROMPT,
        closing_line: str = DEFAULT_SILENCE_CLOSING_LINE,
        gather_timeout: int = 5,
        extended_gather_timeout: int = 10,
    ):
        self._registry = registry
        self.check_in_prompt = check_in_prompt
        self.closing_line = closing_line
        self.gather_timeout = gather_timeout
        self.extended_gather_timeout = extended_gather_timeout

    def listen(self) -> GatewayInstruction:
        """Rung 0: re-arm recognition without speaking."""
        return GatewayInstruction().gather(self.gather_timeout)

    def on_timeout(self, call_id: str, reported_count: Optional[int] = None) -> SilenceDecision:
        """Escalate one rung for a recognition timeout."""
        record = self._registry.get(call_id)
        known = record.silence_count if record is not None else 0
        base = known if reported_count is None else max(0, int(reported_count))
        count = base + 1

        duplicate = record is not None and reported_count is not None and known >= count
        kind = SilenceKind.GENTLE_PROMPT if count == 1 else SilenceKind.GRACEFUL_END

        if kind is SilenceKind.GENTLE_PROMPT:
            instruction = GatewayInstruction().say(self.check_in_prompt).gather(self.extended_gather_timeout)
        else:
            instruction = GatewayInstruction().say(self.closing_line).hangup()

        if duplicate:
            logger.info("Duplicate silence timeout ignored", call_id=call_id, count=count, recorded=known)
        else:
            self._registry.record_silence_event(call_id, kind, count)
            logger.info("Silence escalated", call_id=call_id, count=count, kind=kind.value)
        return SilenceDecision(count=count, kind=kind, instruction=instruction, duplicate=duplicate)

    def on_speech(self, call_id: str) -> None:
        """Recognized speech drops the call back to rung 0."""
        self._registry.reset_silence(call_id)
