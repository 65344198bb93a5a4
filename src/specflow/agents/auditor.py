from __future__ import annotations

from specflow.agents.base import SpecialistAgent
from specflow.schemas import ComplianceResult


class ComplianceAuditorAgent(SpecialistAgent):
    role = "auditor"
    allowed_tools = ("Read", "Bash", "Glob", "Grep")
    result_type = ComplianceResult
    fallback_prompt = """
You are the Compliance Auditor specialist.
Check the finished implementation against each acceptance criterion.
Mark a criterion met only when the repository shows evidence for it.
""".strip()

    @staticmethod
    def instruction(criteria: list[str]) -> str:
        listed = "\n".join(f"{index}. {item}" for index, item in enumerate(criteria, start=1))
        return (
            "Audit the implementation against these acceptance criteria. "
            "Repeat each criterion verbatim in your answer.\n\n" + listed
        )
