"""
HTTP adapters for the perception collaborators.

HttpFrameSource reads the newest frame from the vision-capture service
(port 7060); HttpWorldModel pulls structured entities from the world-model
service (port 7080). Both retry transient failures with exponential backoff
and report failure as ``None`` / ``[]`` instead of raising.
"""

import asyncio
import base64
import binascii
import logging
from typing import Any, Dict, List, Optional

import httpx

from sightline.shared.config import VisionConfig
from sightline.shared.types import CapturedFrame, Pose, StructuredEntity, Vec3

from .frames import make_frame

logger = logging.getLogger("sightline.vision_capture")

BACKOFF_BASE = 0.5
BACKOFF_FACTOR = 2.0


def pose_from_dict(data: Optional[Dict[str, Any]]) -> Optional[Pose]:
    if not data:
        return None
    return Pose(
        position=Vec3.from_any(data.get("position")) or Vec3.zero(),
        facing=Vec3.from_any(data.get("facing")) or Vec3.forward(),
    )


class _RetryingClient:
    """Shared GET-with-retry for the adapters."""

    def __init__(
        self,
        base_url: str,
        timeout: float,
        retries: int,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.retries = max(0, retries)
        self._owns_client = http_client is None
        self.client = http_client or httpx.AsyncClient(timeout=httpx.Timeout(timeout))

    async def _get_json(self, path: str, **params) -> Optional[Any]:
        url = f"{self.base_url}{path}"
        last_error = ""
        for attempt in range(self.retries + 1):
            try:
                response = await self.client.get(url, params=params or None)
                if 400 <= response.status_code < 500:
                    logger.warning("GET %s rejected (%d)", url, response.status_code)
                    return None
                response.raise_for_status()
                return response.json()
            except (httpx.HTTPError, ValueError) as e:
                last_error = str(e) or type(e).__name__
                if attempt < self.retries:
                    await asyncio.sleep(BACKOFF_BASE * BACKOFF_FACTOR ** attempt)
        logger.warning("GET %s failed after %d attempt(s): %s", url, self.retries + 1, last_error)
        return None

    async def close(self) -> None:
        if self._owns_client:
            await self.client.aclose()


class HttpFrameSource(_RetryingClient):
    """Frames from the vision-capture ring buffer.

    The observer pose is whatever was last pushed with ``update_pose`` or
    reported alongside a frame.
    """

    def __init__(self, config: VisionConfig, http_client: Optional[httpx.AsyncClient] = None):
        super().__init__(
            config.capture_service_url,
            config.request_timeout,
            config.max_retries,
            http_client,
        )
        self.config = config
        self._pose = Pose()

    def current_pose(self) -> Pose:
        return self._pose

    def update_pose(self, pose: Pose) -> None:
        self._pose = pose

    async def capture(self) -> Optional[CapturedFrame]:
        body = await self._get_json("/v1/vision/frames/latest", n=1)
        frames = (body or {}).get("frames") or []
        if not frames:
            logger.info("No frame available from capture service")
            return None

        latest = frames[0]
        try:
            data = base64.b64decode(latest.get("data_b64", ""), validate=True)
        except (binascii.Error, ValueError):
            logger.warning("Capture service returned an undecodable frame")
            return None
        if not data:
            return None

        pose = pose_from_dict(latest.get("pose"))
        if pose is not None:
            self._pose = pose

        return make_frame(
            data,
            pose=self._pose,
            width=int(latest.get("width") or self.config.capture_width),
            height=int(latest.get("height") or self.config.capture_height),
            mime_type=latest.get("mime_type") or "image/jpeg",
        )


class HttpWorldModel(_RetryingClient):
    """Structured entities from the world-model service."""

    def __init__(self, config: VisionConfig, http_client: Optional[httpx.AsyncClient] = None):
        super().__init__(
            config.world_model_url,
            config.request_timeout,
            config.max_retries,
            http_client,
        )

    async def entities(self) -> List[StructuredEntity]:
        body = await self._get_json("/v1/world/entities")
        if body is None:
            return []
        items = body.get("entities", []) if isinstance(body, dict) else body
        entities = []
        for item in items or []:
            try:
                entities.append(StructuredEntity.from_dict(item))
            except (KeyError, TypeError, ValueError) as e:
                logger.debug("Skipping malformed entity %r: %s", item, e)
        return entities
