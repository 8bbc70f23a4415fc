# Progress labels shown by clients next to each generation step
STEP_LABELS: dict[str, str] = {
    "prd": "Generating PRD",
    "marketing": "Creating marketing plan",
    "funding": "Creating investor pitch",
    "security": "Reviewing security",
    "ui_theme": "Suggesting visual improvements",
    "features": "Suggesting new features",
    "documentation": "Writing technical documentation",
    "prompts": "Generating development prompts",
    "quality": "Assessing code quality",
    "performance": "Analyzing performance",
    # Legacy type, still readable
    "tools": "Analyzing tooling",
}


def step_label(analysis_type: str) -> str:
    return STEP_LABELS.get(analysis_type, f"Generating {analysis_type}")
