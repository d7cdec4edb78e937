"""Sync orchestrator for remote-to-local database and table copies.

Resolution turns database names or table specs into a flat task list. The
scheduler runs those tasks on a bounded thread pool; each task executor drives
one task through extract, prepare, load and verify with whole-attempt retries.
Every outcome and error lands in a lock-guarded aggregator that the progress
monitor reads while work is in flight, and that writes through to a SQLite
session store for later inspection.
"""
