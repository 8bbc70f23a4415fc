# USD per token
MODEL_COSTS: dict[str, dict[str, float]] = {
    "google/gemini-2.5-flash-lite": {"input": 0.000000075, "output": 0.0000003},
    "google/gemini-2.5-flash": {"input": 0.00000015, "output": 0.0000006},
    "google/gemini-2.5-pro": {"input": 0.00000125, "output": 0.00001},
    "google/gemini-3-pro-preview": {"input": 0.00000125, "output": 0.00001},
    "openai/gpt-5-nano": {"input": 0.00000005, "output": 0.0000004},
    "openai/gpt-4.1-nano": {"input": 0.0000001, "output": 0.0000004},
    "openai/gpt-4o-mini": {"input": 0.00000015, "output": 0.0000006},
    "openai/gpt-5-mini": {"input": 0.00000025, "output": 0.000002},
    "openai/gpt-4.1-mini": {"input": 0.0000004, "output": 0.0000016},
    "openai/o4-mini": {"input": 0.0000011, "output": 0.0000044},
    "openai/o3": {"input": 0.000002, "output": 0.000008},
    "openai/gpt-4.1": {"input": 0.000002, "output": 0.000008},
    "openai/gpt-5": {"input": 0.00000125, "output": 0.00001},
    "openai/gpt-4o": {"input": 0.0000025, "output": 0.00001},
}

FALLBACK_COST_MODEL = "google/gemini-2.5-flash"


def estimate_cost(model: str, input_tokens: int, output_tokens: int) -> float:
    """Estimated USD cost; unknown models are priced as the standard model."""
    costs = MODEL_COSTS.get(model) or MODEL_COSTS[FALLBACK_COST_MODEL]
    return input_tokens * costs["input"] + output_tokens * costs["output"]
