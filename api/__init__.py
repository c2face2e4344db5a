"""Campaign Orchestrator — HTTP API and sweep workers."""
