"""
Sightline Perception Service

HTTP surface over the perception orchestrator. Scans, action hooks and
signals from the action layer come in here; fused results go out.

A failed scan is a 200 with ``success: false``: failures are data.

Port: 7075 | Health: /healthz
"""

from __future__ import annotations

import asyncio
import logging
import os
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, HTTPException
from pydantic import BaseModel, Field

from sightline.model_router.client import InferenceClient
from sightline.shared.config import VisionConfig, load_config
from sightline.shared.log_redaction import redact_dict
from sightline.shared.types import Pose, Vec3
from sightline.shared.version import SIGHTLINE_VERSION
from sightline.vision_capture.http_sources import HttpFrameSource, HttpWorldModel

from .action_verifier import ActionVerifier
from .fuser import PerceptionFuser
from .orchestrator import PerceptionOrchestrator
from .plausibility import PlausibilityFilter
from .result_cache import SpatialResultCache

logger = logging.getLogger("sightline.perception.service")

SERVICE_PORT = 7075


# ---------------------------------------------------------------------------
# Request schemas
# ---------------------------------------------------------------------------

class ScanRequest(BaseModel):
    force: bool = False


class ActionStartRequest(BaseModel):
    action: str = Field(min_length=1)
    target_id: str = ""


class ActionEndRequest(BaseModel):
    action: str = Field(min_length=1)
    target_id: str = ""
    expected_outcome: Optional[str] = None


class ZoneEnteredRequest(BaseModel):
    zone_id: str = Field(min_length=1)


class InteractionCompleteRequest(BaseModel):
    target_id: str = ""
    action: str = ""
    success: bool = True
    rescan: bool = True


class Vec3Body(BaseModel):
    x: float = 0.0
    y: float = 0.0
    z: float = 0.0


class PoseUpdateRequest(BaseModel):
    position: Vec3Body = Field(default_factory=Vec3Body)
    facing: Vec3Body = Field(default_factory=lambda: Vec3Body(z=1.0))


# ---------------------------------------------------------------------------
# Wiring
# ---------------------------------------------------------------------------

def build_orchestrator(config: VisionConfig) -> PerceptionOrchestrator:
    """Default wiring against the capture and world-model services."""
    frame_source = HttpFrameSource(config)
    world_model = HttpWorldModel(config)
    client = InferenceClient(config)
    return PerceptionOrchestrator(
        config=config,
        frame_source=frame_source,
        world_model=world_model,
        client=client,
        cache=SpatialResultCache(config),
        plausibility=PlausibilityFilter(
            config,
            observer=lambda: frame_source.current_pose().position,
        ),
        fuser=PerceptionFuser(),
        verifier=ActionVerifier(client, config),
    )


async def _tick_loop(orchestrator: PerceptionOrchestrator, interval: float) -> None:
    while True:
        await asyncio.sleep(interval)
        try:
            await orchestrator.tick()
        except Exception:
            logger.exception("Tick failed")


def create_app(orchestrator: PerceptionOrchestrator, tick_interval: float = 0.0) -> FastAPI:
    """FastAPI app over ``orchestrator``.

    With ``tick_interval > 0`` a background loop calls ``tick()`` so scans
    start on their own when the observer moves.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info(
            "Perception service starting (provider=%s, model=%s)",
            orchestrator.client.provider.name, orchestrator.config.model_name,
        )
        ticker = None
        if tick_interval > 0:
            ticker = asyncio.create_task(_tick_loop(orchestrator, tick_interval))
        yield
        if ticker is not None:
            ticker.cancel()
            try:
                await ticker
            except asyncio.CancelledError:
                pass
        await orchestrator.client.aclose()
        for adapter in (orchestrator.frame_source, orchestrator.world_model):
            close = getattr(adapter, "close", None)
            if close is not None:
                await close()
        logger.info("Perception service stopped")

    app = FastAPI(title="Sightline Perception", version=SIGHTLINE_VERSION, lifespan=lifespan)
    app.state.orchestrator = orchestrator

    # ---- health / status --------------------------------------------------

    @app.get("/healthz")
    async def healthz():
        return {
            "status": "ok",
            "service": "perception",
            "version": SIGHTLINE_VERSION,
            "enabled": orchestrator.config.enabled,
            "can_process": orchestrator.can_process(),
            "state": orchestrator.state.value,
        }

    @app.get("/v1/perception/status")
    async def get_status():
        status = orchestrator.stats()
        status["config"] = redact_dict(orchestrator.config.model_dump(mode="json"))
        return status

    # ---- scans ------------------------------------------------------------

    @app.post("/v1/perception/scan")
    async def scan(req: ScanRequest):
        outcome = await orchestrator.request_scan(force=req.force)
        return outcome.to_dict()

    @app.get("/v1/perception/last")
    async def get_last():
        if orchestrator.last_fused is None:
            raise HTTPException(404, "No fused perception result available yet")
        return orchestrator.last_fused.to_dict()

    # ---- action layer -----------------------------------------------------

    @app.post("/v1/actions/start")
    async def action_start(req: ActionStartRequest):
        captured = await orchestrator.notify_action_start(req.action, req.target_id)
        return {
            "action": req.action,
            "target_id": req.target_id,
            "requires_verification": orchestrator.verifier.requires_verification(req.action),
            "captured": captured,
        }

    @app.post("/v1/actions/end")
    async def action_end(req: ActionEndRequest):
        verdict = await orchestrator.notify_action_end(
            req.action, req.target_id, req.expected_outcome,
        )
        return {
            "action": req.action,
            "target_id": req.target_id,
            "verified": verdict is not None,
            "confident": verdict is not None and orchestrator.verifier.is_confident(verdict),
            "verdict": verdict.to_dict() if verdict else None,
        }

    @app.post("/v1/zones/enter")
    async def zone_entered(req: ZoneEnteredRequest):
        outcome = await orchestrator.notify_zone_entered(req.zone_id)
        return {"zone_id": req.zone_id, "result": outcome.to_dict()}

    @app.post("/v1/interactions/complete")
    async def interaction_complete(req: InteractionCompleteRequest):
        outcome = await orchestrator.notify_interaction_complete(
            req.target_id, req.action, req.success, rescan=req.rescan,
        )
        return {
            "target_id": req.target_id,
            "result": outcome.to_dict() if outcome else None,
        }

    @app.post("/v1/observer/pose")
    async def update_pose(req: PoseUpdateRequest):
        update = getattr(orchestrator.frame_source, "update_pose", None)
        if update is None:
            raise HTTPException(409, "Frame source reports its own pose")
        pose = Pose(
            position=Vec3(req.position.x, req.position.y, req.position.z),
            facing=Vec3(req.facing.x, req.facing.y, req.facing.z),
        )
        update(pose)
        return {"pose": pose.to_dict(), "should_trigger": orchestrator.should_trigger()}

    return app


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

if __name__ == "__main__":
    import uvicorn

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    cfg = load_config(os.environ.get("SIGHTLINE_CONFIG"))
    uvicorn.run(
        create_app(build_orchestrator(cfg), tick_interval=1.0),
        host="127.0.0.1",
        port=SERVICE_PORT,
        log_level="info",
    )
