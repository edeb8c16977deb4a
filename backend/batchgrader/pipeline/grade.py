"""Grading service factory/dispatcher."""

from batchgrader.ai.openai_grading import OpenAIGradingService
from batchgrader.errors import MissingDependencyError
from batchgrader.grading.base import GradingService
from batchgrader.grading.rule_based import RuleBasedGradingService


def get_grading_service(name: str) -> GradingService:
    grader = name.lower()
    if grader == "rule_based":
        return RuleBasedGradingService()
    if grader == "openai":
        return OpenAIGradingService()
    raise MissingDependencyError(f"Unknown grader '{name}'. Use one of: rule_based, openai")
