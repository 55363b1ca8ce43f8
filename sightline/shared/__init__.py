"""Shared building blocks used by every sightline subpackage."""
