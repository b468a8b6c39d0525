"""Durable stores for threads, audit, backlog, transcripts and credentials."""
