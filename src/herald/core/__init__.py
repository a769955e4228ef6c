"""Ports, persona prompts and the shared AppState."""
