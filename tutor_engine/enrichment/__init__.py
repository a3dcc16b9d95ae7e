"""Post-turn enrichment: flashcards, feedback, long-term memory, introduction state."""
