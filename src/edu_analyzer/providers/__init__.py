"""Interchangeable AI scoring providers and the orchestration around them."""
