from __future__ import annotations

from specflow.agents.base import SpecialistAgent
from specflow.schemas import ReviewResult


class ReviewerAgent(SpecialistAgent):
    role = "reviewer"
    allowed_tools = ("Read", "Bash", "Glob", "Grep")
    result_type = ReviewResult
    fallback_prompt = """
You are the Reviewer specialist.
Find correctness, maintainability, and security issues in the change.
Classify findings as critical, important, or minor.
""".strip()

    @staticmethod
    def instruction(title: str) -> str:
        return f"Review the implementation of task: {title}"
