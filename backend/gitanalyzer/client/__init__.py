from gitanalyzer.client.api_client import AnalysisAPIClient
from gitanalyzer.client.poller import AnalysisPoller, PollSnapshot, StepState, poll_analysis, progress_percent

__all__ = [
    "AnalysisAPIClient",
    "AnalysisPoller",
    "PollSnapshot",
    "StepState",
    "poll_analysis",
    "progress_percent",
]
