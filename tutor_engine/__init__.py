"""Real-time voice engine for the language-tutor app."""

__version__ = "0.1.0"
