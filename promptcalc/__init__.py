"""PromptCalc: safety pipeline for model-generated offline calculator artifacts."""

__version__ = "0.1.0"
