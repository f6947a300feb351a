"""Durable storage for runs, jobs, content and analyses."""
