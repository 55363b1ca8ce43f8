"""Unit tests for frame helpers."""

import base64
import hashlib

from sightline.shared.types import Pose, Vec3
from sightline.vision_capture.frames import compute_content_hash, make_frame


def test_content_hash_is_sha256_prefix():
    data = b"\x89PNG frame bytes"
    assert compute_content_hash(data) == hashlib.sha256(data).hexdigest()[:16]


def test_content_hash_empty():
    assert compute_content_hash(b"") == ""


def test_identical_bytes_same_hash():
    assert make_frame(b"abc").content_hash == make_frame(b"abc").content_hash
    assert make_frame(b"abc").content_hash != make_frame(b"abd").content_hash


def test_make_frame_fields():
    pose = Pose(position=Vec3(1, 2, 3))
    frame = make_frame(b"jpeg", pose=pose, width=512, height=384, captured_at=12.5)
    assert frame.encoded == base64.b64encode(b"jpeg").decode()
    assert frame.pose is pose
    assert (frame.width, frame.height) == (512, 384)
    assert frame.captured_at == 12.5
    assert frame.mime_type == "image/jpeg"


def test_to_dict_omits_bytes():
    d = make_frame(b"jpeg").to_dict()
    assert "data" not in d
    assert "encoded" not in d
