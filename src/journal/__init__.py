"""Append-only JSONL journal of runs, steps, orders and fills."""

from journal.writer import JournalWriter

__all__ = ["JournalWriter"]
