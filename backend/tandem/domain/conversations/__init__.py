"""Conversation lifecycle domain."""
