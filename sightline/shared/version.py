"""Canonical version string for the sightline stack.

Usage:
    from sightline.shared.version import SIGHTLINE_VERSION
    app = FastAPI(..., version=SIGHTLINE_VERSION)
"""

SIGHTLINE_VERSION = "0.4.0"
