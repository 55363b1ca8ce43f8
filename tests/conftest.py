"""
Shared fixtures for the sightline test suite.

Helpers live in ``fakes.py``:
  - FakeClock: injectable monotonic clock for TTL and hourly-budget tests
  - FakeFrameSource / FakeWorldModel: in-memory collaborators
  - mock_http(): httpx.AsyncClient over an httpx.MockTransport
  - scene_json(): model reply text in the scene-understanding shape
  - Harness: the real pipeline wired to a scripted provider endpoint
"""

import pytest

from fakes import FakeClock
from sightline.shared.config import VisionConfig
from sightline.shared.types import Pose
from sightline.vision_capture.frames import make_frame


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def config():
    return VisionConfig(credential="sk-test-0123456789abcdefghij")


@pytest.fixture
def frame():
    return make_frame(b"\xff\xd8test-jpeg-bytes", pose=Pose())
