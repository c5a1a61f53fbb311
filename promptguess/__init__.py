"""PromptGuess: guess the prompt behind an AI-generated image."""

__version__ = "0.1.0"
