"""Core building blocks: errors, run state machine, logging, LLM access."""
