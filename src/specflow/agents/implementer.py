from __future__ import annotations

from specflow.agents.base import SpecialistAgent
from specflow.schemas import ImplementationResult


class ImplementerAgent(SpecialistAgent):
    role = "implementer"
    allowed_tools = ("Read", "Write", "Edit", "Bash", "Glob", "Grep")
    result_type = ImplementationResult
    fallback_prompt = """
You are the Implementer specialist.
Implement exactly the task you are given.
Match repository conventions, commit your changes, and report every file you changed.
""".strip()

    @staticmethod
    def instruction(title: str, description: str) -> str:
        return f"Implement task: {title}\n\n{description}".strip()
