from __future__ import annotations

from conductor.models import Capability
from conductor.specialists.base import SpecialistAgent


class DataLayerAgent(SpecialistAgent):
    role = "data-engineer"
    capability = Capability.DATA_LAYER
    fallback_prompt = """
You are the data-layer specialist.
Own schemas, migrations, models and repositories.
Keep migrations reversible and never change data shape without updating its readers.
""".strip()
