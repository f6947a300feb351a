"""Durable analysis job pipeline.

Jobs live in SQLite and are claimed with conditional updates; there is no
message broker. Ticks are triggered externally (CLI or a periodic scheduler)
and any number of processes may run them at once.
"""
