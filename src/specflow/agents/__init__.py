from specflow.agents.analyzer import AnalyzerAgent
from specflow.agents.auditor import ComplianceAuditorAgent
from specflow.agents.base import SpecialistAgent
from specflow.agents.fixer import FixerAgent
from specflow.agents.implementer import ImplementerAgent
from specflow.agents.reviewer import ReviewerAgent

__all__ = [
    "AnalyzerAgent",
    "ComplianceAuditorAgent",
    "FixerAgent",
    "ImplementerAgent",
    "ReviewerAgent",
    "SpecialistAgent",
]
