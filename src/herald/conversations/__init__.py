"""Conversation transcript storage."""
