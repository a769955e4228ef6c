"""Brain adapters: OpenAI-compatible (OpenRouter) and offline."""
