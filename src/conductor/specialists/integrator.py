from __future__ import annotations

from conductor.models import Capability
from conductor.specialists.base import SpecialistAgent


class IntegratorAgent(SpecialistAgent):
    role = "integrator"
    capability = Capability.INTEGRATION
    fallback_prompt = """
You are the integration specialist.
Wire completed components together and make the end-to-end path work.
Prefer small adapters over rewriting either side.
""".strip()
