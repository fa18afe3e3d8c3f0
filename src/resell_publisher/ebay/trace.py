"""Per-attempt tracing for the publish pipeline.

Every log line of one publish attempt carries the prefix
``[eBay Publish][traceId=<uuid>]``. Only identifiers in SAFE_LOG_KEYS are
ever written; tokens, payloads and addresses are not.
"""

import logging
import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from resell_publisher.ebay.models import PublishStepName, StepOutcome, StepStatus

logger = logging.getLogger(__name__)

SAFE_LOG_KEYS = frozenset({"sku", "offerId", "listingId", "merchantLocationKey", "marketplaceId"})

STEP_ORDER: tuple[PublishStepName, ...] = tuple(PublishStepName)


def generate_trace_id() -> str:
    return str(uuid.uuid4())


class PublishLogger(logging.LoggerAdapter):
    """Logger adapter that prefixes every message with the trace id."""

    def __init__(self, trace_id: str, base_logger: logging.Logger | None = None) -> None:
        super().__init__(base_logger or logger, {"trace_id": trace_id})
        self.trace_id = trace_id

    def process(self, msg: Any, kwargs: Any) -> tuple[Any, Any]:
        extra = kwargs.setdefault("extra", {})
        extra.setdefault("trace_id", self.trace_id)
        return f"[eBay Publish][traceId={self.trace_id}] {msg}", kwargs

    def step_started(self, step: PublishStepName) -> None:
        self.info("Step %d %s started", _step_number(step), step.value)

    def step_complete(self, step: PublishStepName, details: dict[str, str] | None = None) -> None:
        self.info("Step %d %s complete%s", _step_number(step), step.value, _format_safe(details))

    def step_failed(self, step: PublishStepName, error: str) -> None:
        self.error("Step %d %s FAILED: %s", _step_number(step), step.value, error)

    def step_skipped(self, step: PublishStepName, reason: str) -> None:
        self.info("Step %d %s skipped: %s", _step_number(step), step.value, reason)

    def api_call(
        self,
        step: PublishStepName,
        method: str,
        path: str,
        status_code: int,
        payload_keys: list[str] | None = None,
    ) -> None:
        """Log one API call by method, path, status and top-level payload keys."""
        keys = f" payloadKeys=[{','.join(payload_keys)}]" if payload_keys else ""
        self.debug("API %s %s status=%d step=%s%s", method, path, status_code, step.value, keys)


def _step_number(step: PublishStepName) -> int:
    return STEP_ORDER.index(step) + 1


def _format_safe(details: dict[str, str] | None) -> str:
    if not details:
        return ""
    safe = {k: v for k, v in details.items() if k in SAFE_LOG_KEYS and v}
    if not safe:
        return ""
    return " " + " ".join(f"{k}={v}" for k, v in safe.items())


@dataclass
class PublishTrace:
    """Ephemeral state of one publish attempt. Never persisted."""

    trace_id: str = field(default_factory=generate_trace_id)
    current_step: PublishStepName | None = None
    started_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    outcomes: dict[PublishStepName, StepOutcome] = field(default_factory=dict)

    def __post_init__(self) -> None:
        self.log = PublishLogger(self.trace_id)
        for step in STEP_ORDER:
            self.outcomes.setdefault(step, StepOutcome(step=_step_number(step), name=step))

    def start(self, step: PublishStepName) -> StepOutcome:
        self.current_step = step
        outcome = self.outcomes[step]
        outcome.status = StepStatus.IN_PROGRESS
        self.log.step_started(step)
        return outcome

    def complete(self, step: PublishStepName, **identifiers: str | None) -> StepOutcome:
        outcome = self.outcomes[step]
        outcome.status = StepStatus.COMPLETE
        for name, value in identifiers.items():
            setattr(outcome, name, value)
        self.log.step_complete(step, _log_details(identifiers))
        return outcome

    def skip(self, step: PublishStepName, reason: str, **identifiers: str | None) -> StepOutcome:
        outcome = self.outcomes[step]
        outcome.status = StepStatus.SKIPPED
        for name, value in identifiers.items():
            setattr(outcome, name, value)
        self.log.step_skipped(step, reason)
        return outcome

    def fail(self, step: PublishStepName, error: str) -> StepOutcome:
        outcome = self.outcomes[step]
        outcome.status = StepStatus.FAILED
        outcome.error = error
        self.log.step_failed(step, error)
        return outcome

    def steps(self) -> list[StepOutcome]:
        return [self.outcomes[step].model_copy() for step in STEP_ORDER]


# StepOutcome field -> safe log key
_LOG_KEY_NAMES = {
    "item_sku": "sku",
    "offer_id": "offerId",
    "listing_id": "listingId",
    "merchant_location_key": "merchantLocationKey",
}


def _log_details(identifiers: dict[str, str | None]) -> dict[str, str]:
    return {
        _LOG_KEY_NAMES[name]: value
        for name, value in identifiers.items()
        if name in _LOG_KEY_NAMES and value
    }
