"""Indexing Control Center for the video indexing pipeline.

Drives ledgered indexing test runs, demo-safe video unlocks and the
indexing ops dashboard on top of Supabase and its Edge Functions.
"""

__version__ = "1.0.0"
