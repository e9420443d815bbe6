"""Concrete provider adapters (fal, Replicate, OpenAI, Claude)."""
