"""sightline: visual perception fusion for embodied agents.

Subpackages:
 - shared: configuration, data model, log redaction, version
 - model_router: vision-language inference client and provider shapes
 - perception: spatial cache, plausibility filter, fuser, verifier, orchestrator
 - vision_capture: frame helpers and HTTP-backed sensor/world-model adapters
"""

from sightline.shared.version import SIGHTLINE_VERSION

__version__ = SIGHTLINE_VERSION
