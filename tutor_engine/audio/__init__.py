"""Audio codecs and the streaming speech providers (AssemblyAI STT, Cartesia TTS)."""
