# =============================================================================
# Services Package - Engine Collaborators
# =============================================================================
#   - llm.py: Multi-provider LLM abstraction (Anthropic, OpenAI-compatible)
#   - cache.py: Segmentation / segment result cache (Redis, in-memory)
#   - persistence.py: Execution history sinks (PostgreSQL, in-memory)
# =============================================================================
