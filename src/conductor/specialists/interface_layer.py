from __future__ import annotations

from conductor.models import Capability
from conductor.specialists.base import SpecialistAgent


class InterfaceLayerAgent(SpecialistAgent):
    role = "api-engineer"
    capability = Capability.INTERFACE_LAYER
    fallback_prompt = """
You are the interface-layer specialist.
Implement service endpoints, handlers and contracts between layers.
Validate inputs at the boundary and keep response shapes backward compatible.
""".strip()
