"""Stage agents for the five pipeline stages."""

from ideaflow.ai.agents.analysis import AnalysisAgent
from ideaflow.ai.agents.base import BaseAgent, StageContext, StageResult
from ideaflow.ai.agents.critique import CritiqueAgent
from ideaflow.ai.agents.ideation import IdeationAgent
from ideaflow.ai.agents.research import ResearchAgent
from ideaflow.ai.agents.writing import WritingAgent

__all__ = ["AnalysisAgent", "BaseAgent", "CritiqueAgent", "IdeationAgent", "ResearchAgent", "StageContext", "StageResult", "WritingAgent"]
