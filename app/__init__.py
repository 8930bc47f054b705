# =============================================================================
# Segmented Agentic Search
# =============================================================================
# Answers a natural-language query by decomposing it into a dependency
# graph of sub-questions ("segments"), executing independent segments
# in parallel stages, and synthesizing one answer with confidence and
# sources.
#
# Package structure:
#   app/
#   ├── api/          → FastAPI route handlers (search, segment preview,
#   │                    history)
#   ├── agents/       → The engine: segmenter, stage scheduler, segment
#   │                    runner, synthesizer, LangGraph orchestration
#   ├── db/           → Database engine, session, and ORM models
#   ├── models/       → Pydantic V2 request/response schemas
#   └── services/     → Model providers, cache, persistence sinks
# =============================================================================
