"""
Model Router - Vision Inference Client

Sends a prompt plus zero or more frames to the configured vision-language
provider and turns the free-form reply into typed results.

Guarantees:
  - ``submit`` never raises; every failure is an ``InferenceResult`` with
    ``success=False`` and a readable ``error``.
  - At most one request is in flight per client (asyncio.Lock).
  - Cost is only charged for successful replies, into an hourly bucket that
    rolls over once more than an hour has passed since it started.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Tuple

import httpx

from sightline.shared.config import VisionConfig
from sightline.shared.log_redaction import redact_string
from sightline.shared.types import (
    CapturedFrame,
    InferenceKind,
    InferenceRequest,
    InferenceResult,
    RawDetection,
    SceneResult,
    Vec3,
    VerificationVerdict,
)

from . import json_scan
from .errors import InferenceError, ParseError
from .prompts import PromptTemplates
from .providers import Provider, get_provider

logger = logging.getLogger("sightline.model_router.client")

HOUR_SECONDS = 3600.0
MAX_LOGGED_REPLY = 2000


# ---------------------------------------------------------------------------
# Statistics
# ---------------------------------------------------------------------------

@dataclass
class InferenceStats:
    total_requests: int = 0
    successful_requests: int = 0
    failed_requests: int = 0
    average_latency: float = 0.0
    total_cost: float = 0.0
    current_hour_cost: float = 0.0
    hour_started_at: float = 0.0

    @property
    def success_rate(self) -> float:
        if self.total_requests == 0:
            return 0.0
        return self.successful_requests / self.total_requests

    def record_latency(self, latency: float) -> None:
        """Incremental mean over all requests."""
        n = self.total_requests
        if n <= 0:
            return
        self.average_latency += (latency - self.average_latency) / n

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total_requests": self.total_requests,
            "successful_requests": self.successful_requests,
            "failed_requests": self.failed_requests,
            "success_rate": round(self.success_rate, 4),
            "average_latency": round(self.average_latency, 4),
            "total_cost": round(self.total_cost, 6),
            "current_hour_cost": round(self.current_hour_cost, 6),
        }


# ---------------------------------------------------------------------------
# Reply parsing
# ---------------------------------------------------------------------------

def _parse_position(block: str) -> Optional[Vec3]:
    position = json_scan.extract_object(block, "position")
    if position is None:
        return None
    if not any(json_scan.has_key(position, axis) for axis in ("x", "y", "z")):
        return None
    return Vec3(
        json_scan.extract_number(position, "x"),
        json_scan.extract_number(position, "y"),
        json_scan.extract_number(position, "z"),
    )


def parse_detection(block: str) -> RawDetection:
    """One element of an ``objects`` array."""
    return RawDetection(
        name=json_scan.extract_string(block, "name"),
        type=json_scan.extract_string(block, "type"),
        description=json_scan.extract_string(block, "description"),
        state=json_scan.extract_string(block, "state"),
        confidence=json_scan.extract_number(block, "confidence"),
        relative_position=json_scan.extract_nested_string(block, "position", "relative"),
        affordances=json_scan.extract_string_array(block, "affordances"),
        estimated_position=_parse_position(block),
    )


def parse_scene(body: str) -> SceneResult:
    objects = [parse_detection(b) for b in json_scan.extract_object_blocks(body, "objects")]

    # single-object affordance shape
    if not objects and json_scan.has_key(body, "object_name"):
        objects.append(RawDetection(
            name=json_scan.extract_string(body, "object_name"),
            type=json_scan.extract_string(body, "object_type"),
            affordances=json_scan.extract_string_array(body, "affordances"),
            confidence=json_scan.extract_number(body, "confidence"),
        ))

    return SceneResult(
        description=json_scan.extract_string(body, "scene_description"),
        suggested_actions=json_scan.extract_string_array(body, "suggested_actions"),
        objects=objects,
    )


def parse_verification(body: str) -> VerificationVerdict:
    return VerificationVerdict(
        success=json_scan.extract_bool(body, "success"),
        confidence=json_scan.extract_number(body, "confidence"),
        observed_change=json_scan.extract_string(body, "observed_change"),
        failure_reason=json_scan.extract_string(body, "failure_reason"),
    )


def parse_reply(
    kind: InferenceKind, text: str
) -> Tuple[Optional[SceneResult], Optional[VerificationVerdict]]:
    """Locate the JSON object in ``text`` and parse it for ``kind``.

    Raises ParseError when the text holds no object at all.
    """
    body = json_scan.locate_json_object(text)
    if body is None:
        raise ParseError("No JSON object found in model reply")
    if kind == InferenceKind.ACTION_VERIFICATION:
        return None, parse_verification(body)
    return parse_scene(body), None


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------

class InferenceClient:
    """Budget-gated, single-flight vision-language client."""

    def __init__(
        self,
        config: VisionConfig,
        http_client: Optional[httpx.AsyncClient] = None,
        provider: Optional[Provider] = None,
        clock: Callable[[], float] = time.monotonic,
        prompts: Optional[PromptTemplates] = None,
    ):
        self.config = config
        self.provider = provider or get_provider(config)
        self.prompts = prompts or PromptTemplates()
        self._clock = clock
        self._http = http_client
        self._owns_http = http_client is None
        self._lock = asyncio.Lock()
        self._in_flight = False
        self.stats = InferenceStats(hour_started_at=clock())

    # ---- gate -------------------------------------------------------------

    @property
    def is_processing(self) -> bool:
        return self._in_flight

    def _roll_hour(self) -> None:
        now = self._clock()
        if now - self.stats.hour_started_at > HOUR_SECONDS:
            if self.stats.current_hour_cost:
                logger.info("Hourly cost bucket reset (was $%.4f)", self.stats.current_hour_cost)
            self.stats.current_hour_cost = 0.0
            self.stats.hour_started_at = now

    def budget_exceeded(self) -> bool:
        self._roll_hour()
        return self.stats.current_hour_cost >= self.config.max_cost_per_hour

    def can_accept(self) -> bool:
        """Pre-flight gate: enabled, credential present, within budget."""
        if not self.config.enabled:
            return False
        if not self.provider.available:
            return False
        if self.config.pause_on_budget_exceeded and self.budget_exceeded():
            return False
        return True

    def refusal_reason(self) -> Optional[str]:
        if not self.config.enabled:
            return "Vision inference is disabled"
        if not self.provider.available:
            return f"No credential configured for provider '{self.provider.name}'"
        if self.config.pause_on_budget_exceeded and self.budget_exceeded():
            return (
                f"Hourly budget exceeded (${self.stats.current_hour_cost:.4f} "
                f">= ${self.config.max_cost_per_hour:.4f})"
            )
        return None

    def record_spend(self, amount: float) -> None:
        """Charge ``amount`` to the current and total cost."""
        self._roll_hour()
        self.stats.current_hour_cost += amount
        self.stats.total_cost += amount

    # ---- transport --------------------------------------------------------

    def _client(self) -> httpx.AsyncClient:
        if self._http is None:
            self._http = httpx.AsyncClient(
                timeout=httpx.Timeout(self.config.request_timeout),
            )
        return self._http

    async def aclose(self) -> None:
        if self._owns_http and self._http is not None:
            await self._http.aclose()
            self._http = None

    # ---- submit -----------------------------------------------------------

    async def submit(self, request: InferenceRequest) -> InferenceResult:
        """Run one request. Never raises."""
        async with self._lock:
            self._in_flight = True
            try:
                return await self._submit(request)
            finally:
                self._in_flight = False

    async def _submit(self, request: InferenceRequest) -> InferenceResult:
        result = InferenceResult(request_id=request.id)

        reason = self.refusal_reason()
        if reason is not None:
            result.error = reason
            logger.info("Request %s refused: %s", request.id, reason)
            return result

        self.stats.total_requests += 1
        timeout = self.config.request_timeout
        started = self._clock()

        try:
            reply = await asyncio.wait_for(
                self.provider.chat(self._client(), request.prompt, list(request.frames), timeout),
                timeout=timeout,
            )
            text = reply["text"]
            result.raw_text = text
            self._log_reply(request, text)

            result.scene_result, result.verification_result = parse_reply(request.kind, text)
            result.tokens_used = int(reply.get("tokens", 0))
            result.estimated_cost = self.provider.estimate_cost(result.tokens_used)
            result.success = True
        except asyncio.TimeoutError:
            result.error = f"Request timed out after {timeout:.1f}s"
        except asyncio.CancelledError:
            # caller gave up; the request still counts as failed
            self.stats.record_latency(max(0.0, self._clock() - started))
            self.stats.failed_requests += 1
            logger.warning("Request %s (%s) cancelled", request.id, request.kind.value)
            raise
        except InferenceError as e:
            result.error = str(e) or e.reason
        except Exception as e:
            logger.exception("Unexpected failure in request %s", request.id)
            result.error = f"Unexpected error: {type(e).__name__}: {redact_string(str(e))}"

        result.latency = max(0.0, self._clock() - started)
        self.stats.record_latency(result.latency)

        if result.success:
            self.stats.successful_requests += 1
            self.record_spend(result.estimated_cost)
            logger.debug(
                "Request %s (%s) ok: %d tokens, $%.5f, %.2fs",
                request.id, request.kind.value, result.tokens_used,
                result.estimated_cost, result.latency,
            )
        else:
            self.stats.failed_requests += 1
            logger.warning("Request %s (%s) failed: %s", request.id, request.kind.value, result.error)

        return result

    def _log_reply(self, request: InferenceRequest, text: str) -> None:
        level = logging.INFO if self.config.log_responses else logging.DEBUG
        if logger.isEnabledFor(level):
            logger.log(level, "Reply to %s: %s", request.id, redact_string(text[:MAX_LOGGED_REPLY]))

    # ---- convenience builders ---------------------------------------------

    async def request_scene(self, frame: CapturedFrame) -> InferenceResult:
        request = InferenceRequest(
            kind=InferenceKind.SCENE_UNDERSTANDING,
            prompt=self.prompts.render(InferenceKind.SCENE_UNDERSTANDING),
            frames=[frame],
        )
        return await self.submit(request)

    async def request_verification(
        self,
        before: Optional[CapturedFrame],
        after: CapturedFrame,
        action: str,
        target: str,
        expected: str = "",
    ) -> InferenceResult:
        """Frames go out as [before, after], or [after] alone."""
        frames: List[CapturedFrame] = [f for f in (before, after) if f is not None]
        request = InferenceRequest(
            kind=InferenceKind.ACTION_VERIFICATION,
            prompt=self.prompts.render(
                InferenceKind.ACTION_VERIFICATION,
                action=action,
                target=target,
                expected=expected or "the action completes",
            ),
            frames=frames,
        )
        return await self.submit(request)

    async def request_affordances(self, frame: CapturedFrame) -> InferenceResult:
        request = InferenceRequest(
            kind=InferenceKind.AFFORDANCE_DISCOVERY,
            prompt=self.prompts.render(InferenceKind.AFFORDANCE_DISCOVERY),
            frames=[frame],
        )
        return await self.submit(request)

    def to_dict(self) -> Dict[str, Any]:
        out = self.stats.to_dict()
        out.update({
            "provider": self.provider.name,
            "model": self.config.model_name,
            "can_accept": self.can_accept(),
            "processing": self._in_flight,
            "max_cost_per_hour": self.config.max_cost_per_hour,
        })
        return out
