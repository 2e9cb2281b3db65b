from conductor.models import Capability
from conductor.specialists.base import SpecialistAgent, SpecialistResponse
from conductor.specialists.data_layer import DataLayerAgent
from conductor.specialists.generalist import GeneralistAgent
from conductor.specialists.integrator import IntegratorAgent
from conductor.specialists.interface_layer import InterfaceLayerAgent
from conductor.specialists.presentation import PresentationAgent
from conductor.specialists.tester import TesterAgent

SPECIALISTS_BY_CAPABILITY: dict[Capability, type[SpecialistAgent]] = {
    Capability.DATA_LAYER: DataLayerAgent,
    Capability.INTERFACE_LAYER: InterfaceLayerAgent,
    Capability.PRESENTATION_LAYER: PresentationAgent,
    Capability.TEST: TesterAgent,
    Capability.INTEGRATION: IntegratorAgent,
    Capability.GENERAL: GeneralistAgent,
}


def specialist_for(capability: Capability | str | None) -> type[SpecialistAgent]:
    """Specialist class for a capability tag; unknown tags get the generalist."""
    if not isinstance(capability, Capability):
        capability = Capability.parse(capability)
    return SPECIALISTS_BY_CAPABILITY.get(capability, GeneralistAgent)


__all__ = [
    "SPECIALISTS_BY_CAPABILITY",
    "DataLayerAgent",
    "GeneralistAgent",
    "IntegratorAgent",
    "InterfaceLayerAgent",
    "PresentationAgent",
    "SpecialistAgent",
    "SpecialistResponse",
    "TesterAgent",
    "specialist_for",
]
