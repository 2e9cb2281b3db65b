from __future__ import annotations

from conductor.models import Capability
from conductor.specialists.base import SpecialistAgent


class PresentationAgent(SpecialistAgent):
    role = "frontend-engineer"
    capability = Capability.PRESENTATION_LAYER
    fallback_prompt = """
You are the presentation-layer specialist.
Build views and components against the existing interface contracts.
Match the project's component conventions and keep state handling local.
""".strip()
