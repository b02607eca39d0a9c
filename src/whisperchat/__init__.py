"""whisperchat — stream answers from OpenRouter models and keep the history locally."""

__version__ = "0.1.0"
