from __future__ import annotations

from specflow.agents.base import SpecialistAgent
from specflow.schemas import FixResult


class FixerAgent(SpecialistAgent):
    role = "fixer"
    allowed_tools = ("Read", "Write", "Edit", "Bash", "Glob", "Grep")
    result_type = FixResult
    fallback_prompt = """
You are the Fixer specialist.
Resolve the single review finding you are given without widening the change.
""".strip()

    @staticmethod
    def instruction(severity: str, description: str) -> str:
        return f"Fix this {severity} review finding:\n\n{description}"
