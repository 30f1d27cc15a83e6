"""LLM access: OpenRouter client and credential rotation."""
