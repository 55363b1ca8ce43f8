"""Prompt templates for vision-language requests.

Each ``InferenceKind`` has a default template asking for a JSON reply in the
shape the client parser understands. Templates use ``{name}`` placeholders;
unknown placeholders are left untouched.
"""

from __future__ import annotations

from typing import Dict, Optional

from sightline.shared.types import InferenceKind

SCENE_UNDERSTANDING_PROMPT = """Analyze this scene from an embodied agent's perspective.
Identify all interactive objects and their properties.

Return JSON:
{
  "objects": [
    {
      "name": "string",
      "type": "seat|door|arcade|display|container|item",
      "description": "brief description",
      "affordances": ["sit", "examine"],
      "position": {"relative": "center|left|right|near|far"},
      "state": "open|closed|occupied|available",
      "confidence": 0.0
    }
  ],
  "scene_description": "brief overall description",
  "suggested_actions": ["action 1", "action 2"]
}"""

ACTION_VERIFICATION_PROMPT = """Previous action: {action}
Target: {target}
Expected outcome: {expected}

With two images, the first was taken before the action and the second after it.
A single image shows the scene after the action.
Did the action succeed?
Return JSON:
{
  "success": true,
  "confidence": 0.0,
  "observed_change": "description of what changed",
  "failure_reason": "if failed, why?"
}"""

AFFORDANCE_DISCOVERY_PROMPT = """Examine the objects in this scene.
Identify what actions an embodied agent could perform with each.

Focus on:
- Graspable vs ungraspable
- Openable containers
- Sittable surfaces
- Interactive displays

Return JSON:
{
  "objects": [
    {
      "name": "string",
      "type": "string",
      "affordances": ["action1", "action2"],
      "confidence": 0.0
    }
  ],
  "scene_description": "additional observations"
}"""

DEFAULT_TEMPLATES: Dict[InferenceKind, str] = {
    InferenceKind.SCENE_UNDERSTANDING: SCENE_UNDERSTANDING_PROMPT,
    InferenceKind.ACTION_VERIFICATION: ACTION_VERIFICATION_PROMPT,
    InferenceKind.AFFORDANCE_DISCOVERY: AFFORDANCE_DISCOVERY_PROMPT,
}


def replace_variables(template: str, **variables: str) -> str:
    """Substitute ``{key}`` placeholders without touching JSON braces."""
    result = template
    for key, value in variables.items():
        result = result.replace("{%s}" % key, "" if value is None else str(value))
    return result


class PromptTemplates:
    """Per-kind prompt templates with optional overrides."""

    def __init__(self, overrides: Optional[Dict[InferenceKind, str]] = None):
        self._templates = dict(DEFAULT_TEMPLATES)
        for kind, text in (overrides or {}).items():
            if text:
                self._templates[InferenceKind(kind)] = text

    def get(self, kind: InferenceKind) -> str:
        return self._templates.get(kind, SCENE_UNDERSTANDING_PROMPT)

    def render(self, kind: InferenceKind, **variables: str) -> str:
        return replace_variables(self.get(kind), **variables)
