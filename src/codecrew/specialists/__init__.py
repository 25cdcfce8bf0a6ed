from codecrew.specialists.base import SpecialistAgent, SpecialistResponse
from codecrew.specialists.implementer import ImplementerAgent
from codecrew.specialists.planners import (
    ArchitectAgent,
    BacklogWriterAgent,
    RiskAnalystAgent,
    SpecWriterAgent,
)
from codecrew.specialists.rebaser import RebaserAgent

__all__ = [
    "ArchitectAgent",
    "BacklogWriterAgent",
    "ImplementerAgent",
    "RebaserAgent",
    "RiskAnalystAgent",
    "SpecWriterAgent",
    "SpecialistAgent",
    "SpecialistResponse",
]
