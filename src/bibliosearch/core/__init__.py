"""Core — Orchestration, graph expansion and engine lifecycle."""
