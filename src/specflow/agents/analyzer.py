from __future__ import annotations

from specflow.agents.base import SpecialistAgent
from specflow.schemas import AnalysisResult


class AnalyzerAgent(SpecialistAgent):
    role = "analyzer"
    allowed_tools = ("Read", "Glob", "Grep")
    result_type = AnalysisResult
    fallback_prompt = """
You are the Analyzer specialist.
Read the specification and the repository, then break the work into
ordered implementation tasks with explicit dependencies.
""".strip()

    @staticmethod
    def instruction(spec_text: str) -> str:
        return f"Analyze this specification and list the implementation tasks.\n\n{spec_text}"
