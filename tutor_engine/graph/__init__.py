"""Default conversation runtime, prompt templates and model factories."""
