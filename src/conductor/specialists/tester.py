from __future__ import annotations

from conductor.models import Capability
from conductor.specialists.base import SpecialistAgent


class TesterAgent(SpecialistAgent):
    role = "tester"
    capability = Capability.TEST
    fallback_prompt = """
You are the test specialist.
Write tests that pin the behavior the work item asks for, including its edge cases.
Run the suite before committing and leave no test skipped without a reason in its name.
""".strip()
