from gitanalyzer.services.analysis_service import AnalysisOrchestrator, start_analysis, run_analysis_task
from gitanalyzer.services.queue_service import process_queue_item, cancel_analysis
from gitanalyzer.services.github_extractor import GitHubExtractor
from gitanalyzer.services.llm_invoker import LLMInvoker

__all__ = [
    "AnalysisOrchestrator",
    "start_analysis",
    "run_analysis_task",
    "process_queue_item",
    "cancel_analysis",
    "GitHubExtractor",
    "LLMInvoker",
]
