# =============================================================================
# Models Package - Pydantic V2 Schemas
# =============================================================================
# Request/response schemas for the API. These are SEPARATE from the
# engine dataclasses (app/agents/types.py) and the ORM models
# (app/db/models.py), so the public contract evolves on its own and raw
# model output never reaches clients.
# =============================================================================
