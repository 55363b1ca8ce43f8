"""HTTP adapters against mocked capture and world-model services."""

import base64

import httpx
import pytest

from fakes import mock_http
from sightline.shared.config import VisionConfig
from sightline.vision_capture import http_sources
from sightline.vision_capture.frames import compute_content_hash
from sightline.vision_capture.http_sources import HttpFrameSource, HttpWorldModel, pose_from_dict

JPEG = b"\xff\xd8\xff\xe0fake-jpeg"


@pytest.fixture(autouse=True)
def no_backoff(monkeypatch):
    monkeypatch.setattr(http_sources, "BACKOFF_BASE", 0.0)


def _frames_body(data=JPEG, pose=None):
    frame = {"data_b64": base64.b64encode(data).decode(), "width": 320, "height": 240}
    if pose is not None:
        frame["pose"] = pose
    return {"frames": [frame]}


class TestFrameSource:
    @pytest.mark.asyncio
    async def test_capture_latest(self):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(200, json=_frames_body(pose={"position": {"x": 4, "y": 0, "z": 1}}))

        source = HttpFrameSource(VisionConfig(), http_client=mock_http(handler))
        frame = await source.capture()

        assert frame.data == JPEG
        assert frame.content_hash == compute_content_hash(JPEG)
        assert (frame.width, frame.height) == (320, 240)
        assert frame.pose.position.x == 4.0
        assert source.current_pose().position.x == 4.0
        assert seen[0].url.path == "/v1/vision/frames/latest"
        assert seen[0].url.params["n"] == "1"

    @pytest.mark.asyncio
    async def test_pushed_pose_used_when_frame_has_none(self):
        source = HttpFrameSource(VisionConfig(), http_client=mock_http(lambda r: httpx.Response(200, json=_frames_body())))
        pose = pose_from_dict({"position": [1, 2, 3]})
        source.update_pose(pose)
        frame = await source.capture()
        assert frame.pose is pose

    @pytest.mark.asyncio
    async def test_empty_buffer(self):
        source = HttpFrameSource(VisionConfig(), http_client=mock_http(lambda r: httpx.Response(200, json={"frames": []})))
        assert await source.capture() is None

    @pytest.mark.asyncio
    async def test_undecodable_frame(self):
        body = {"frames": [{"data_b64": "not base64!!"}]}
        source = HttpFrameSource(VisionConfig(), http_client=mock_http(lambda r: httpx.Response(200, json=body)))
        assert await source.capture() is None

    @pytest.mark.asyncio
    async def test_retries_then_succeeds(self):
        attempts = []

        def handler(request):
            attempts.append(request)
            if len(attempts) < 3:
                return httpx.Response(503)
            return httpx.Response(200, json=_frames_body())

        source = HttpFrameSource(VisionConfig(max_retries=2), http_client=mock_http(handler))
        assert await source.capture() is not None
        assert len(attempts) == 3

    @pytest.mark.asyncio
    async def test_gives_up_after_retries(self):
        attempts = []

        def handler(request):
            attempts.append(request)
            raise httpx.ConnectError("refused", request=request)

        source = HttpFrameSource(VisionConfig(max_retries=1), http_client=mock_http(handler))
        assert await source.capture() is None
        assert len(attempts) == 2

    @pytest.mark.asyncio
    async def test_client_error_not_retried(self):
        attempts = []

        def handler(request):
            attempts.append(request)
            return httpx.Response(404)

        source = HttpFrameSource(VisionConfig(max_retries=3), http_client=mock_http(handler))
        assert await source.capture() is None
        assert len(attempts) == 1


class TestWorldModel:
    @pytest.mark.asyncio
    async def test_entities_envelope(self):
        body = {"entities": [
            {"id": "chair_1", "name": "Red Chair", "type": "seat", "position": {"x": 2, "y": 0, "z": 3},
             "affordances": ["sit"]},
            {"name": "missing id"},
        ]}
        world = HttpWorldModel(VisionConfig(), http_client=mock_http(lambda r: httpx.Response(200, json=body)))
        entities = await world.entities()
        assert [e.id for e in entities] == ["chair_1"]
        assert entities[0].position.z == 3.0

    @pytest.mark.asyncio
    async def test_bare_list(self):
        body = [{"id": "door_1", "name": "Door"}]
        world = HttpWorldModel(VisionConfig(), http_client=mock_http(lambda r: httpx.Response(200, json=body)))
        assert len(await world.entities()) == 1

    @pytest.mark.asyncio
    async def test_unreachable_is_empty(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        world = HttpWorldModel(VisionConfig(max_retries=0), http_client=mock_http(handler))
        assert await world.entities() == []
