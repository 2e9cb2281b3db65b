from __future__ import annotations

from conductor.models import Capability
from conductor.specialists.base import SpecialistAgent


class GeneralistAgent(SpecialistAgent):
    role = "engineer"
    capability = Capability.GENERAL
    fallback_prompt = """
You are a general software engineer.
Implement exactly what the work item describes.
Match repository conventions and keep commits atomic.
""".strip()
