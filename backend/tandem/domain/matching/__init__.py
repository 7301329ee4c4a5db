"""Matchmaking queue domain."""
