"""Generate images from text prompts with the Gemini API and preview them in the terminal."""

__version__ = "1.0.0"
