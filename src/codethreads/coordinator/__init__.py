"""Worker state machine, orchestrator and rate-limit scheduling."""
