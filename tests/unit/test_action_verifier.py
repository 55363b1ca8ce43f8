"""Unit tests for ActionVerifier evidence handling and verdicts."""

import json
from unittest.mock import AsyncMock

import httpx
import pytest

from fakes import FakeClock, mock_http, reply_with, scene_json
from sightline.model_router.client import InferenceClient
from sightline.perception.action_verifier import AFTER_ONLY_CONFIDENCE, ActionVerifier
from sightline.shared.config import VisionConfig
from sightline.shared.types import VerificationVerdict
from sightline.vision_capture.frames import make_frame


def _verifier(handler, **cfg):
    cfg.setdefault("credential", "sk-test-0123456789abcdefghij")
    client = InferenceClient(VisionConfig(**cfg), http_client=mock_http(handler), clock=FakeClock())
    return ActionVerifier(client)


VERDICT_OK = json.dumps({"success": True, "confidence": 0.9, "observed_change": "now seated"})


class TestPolicy:
    @pytest.mark.parametrize("action", ["sit", "Open", "pickup", "use"])
    def test_verifiable(self, action):
        assert _verifier(reply_with("{}")).requires_verification(action)

    @pytest.mark.parametrize("action", ["move", "LOOK", "wait", "think"])
    def test_unverifiable(self, action):
        assert not _verifier(reply_with("{}")).requires_verification(action)

    def test_unknown_action_requires(self):
        assert _verifier(reply_with("{}")).requires_verification("dance")

    @pytest.mark.parametrize("action", ["", "   ", None])
    def test_empty_never_requires(self, action):
        assert not _verifier(reply_with("{}")).requires_verification(action)

    def test_is_confident(self):
        v = _verifier(reply_with("{}"), min_verification_confidence=0.7)
        assert v.is_confident(VerificationVerdict(success=True, confidence=0.7))
        assert not v.is_confident(VerificationVerdict(success=True, confidence=0.69))


class TestEvidence:
    def test_action_key(self):
        assert ActionVerifier.action_key("sit", "chair_1") == "sit:chair_1"

    def test_pending(self):
        v = _verifier(reply_with("{}"))
        v.set_before_capture("sit:c", make_frame(b"before"))
        v.set_after_capture("open:d", make_frame(b"after"))
        assert v.has_pending("sit:c")
        assert v.pending_count == 2
        v.clear("sit:c")
        assert not v.has_pending("sit:c")
        assert v.pending_count == 1


class TestVerify:
    @pytest.mark.asyncio
    async def test_pair_sends_two_frames(self):
        calls = []
        v = _verifier(reply_with(VERDICT_OK, calls=calls))
        v.set_before_capture("sit:chair_1", make_frame(b"before"))
        v.set_after_capture("sit:chair_1", make_frame(b"after"))

        verdict = await v.verify("sit:chair_1", expected_outcome="seated")

        assert verdict.success
        assert verdict.confidence == pytest.approx(0.9)
        assert verdict.action_type == "sit"
        assert verdict.target_id == "chair_1"
        body = json.loads(calls[0].content)
        parts = body["messages"][0]["content"]
        assert sum(1 for p in parts if p["type"] == "image_url") == 2
        assert "seated" in parts[0]["text"]
        assert not v.has_pending("sit:chair_1")

    @pytest.mark.asyncio
    async def test_pair_goes_through_client_helper(self):
        v = _verifier(reply_with(VERDICT_OK))
        before, after = make_frame(b"before"), make_frame(b"after")
        v.client.request_verification = AsyncMock(wraps=v.client.request_verification)
        v.set_before_capture("open:door_2", before)
        v.set_after_capture("open:door_2", after)

        verdict = await v.verify("open:door_2", expected_outcome="door swings open")

        assert verdict.success
        v.client.request_verification.assert_awaited_once_with(
            before, after, "open", "door_2", "door swings open",
        )

    @pytest.mark.asyncio
    async def test_after_only_reduced_confidence(self):
        v = _verifier(reply_with(scene_json([], description="An agent sits on a chair")))
        v.set_after_capture("sit:chair_1", make_frame(b"after"))
        verdict = await v.verify("sit:chair_1")
        assert verdict.success
        assert verdict.confidence == AFTER_ONLY_CONFIDENCE
        assert verdict.observed_change == "An agent sits on a chair"

    @pytest.mark.asyncio
    async def test_no_after_frame(self):
        calls = []
        v = _verifier(reply_with(VERDICT_OK, calls=calls))
        v.set_before_capture("open:door_2", make_frame(b"before"))
        verdict = await v.verify("open:door_2")
        assert not verdict.success
        assert verdict.failure_reason == "No after capture available"
        assert verdict.target_id == "door_2"
        assert calls == []
        assert v.pending_count == 0

    @pytest.mark.asyncio
    async def test_inference_failure_becomes_verdict(self):
        v = _verifier(lambda r: httpx.Response(500, json={}))
        v.set_before_capture("sit:c", make_frame(b"before"))
        v.set_after_capture("sit:c", make_frame(b"after"))
        verdict = await v.verify("sit:c")
        assert not verdict.success
        assert verdict.confidence == 0.0
        assert "500" in verdict.failure_reason
        assert v.pending_count == 0

    @pytest.mark.asyncio
    async def test_client_refusal_becomes_verdict(self):
        v = _verifier(reply_with(VERDICT_OK), enabled=False)
        v.set_after_capture("sit:c", make_frame(b"after"))
        verdict = await v.verify("sit:c")
        assert not verdict.success

    @pytest.mark.asyncio
    async def test_stats(self):
        v = _verifier(reply_with(VERDICT_OK))
        for key in ("sit:a", "sit:b"):
            v.set_before_capture(key, make_frame(b"before"))
            v.set_after_capture(key, make_frame(b"after"))
            await v.verify(key)
        await v.verify("sit:missing")

        stats = v.stats()
        assert stats.total == 3
        assert stats.successful == 2
        assert stats.failed == 1
        assert stats.success_rate == pytest.approx(2 / 3)
        assert stats.average_confidence == pytest.approx(0.6)

        v.reset()
        assert v.stats().total == 0
