# =============================================================================
# API Request Models - Pydantic V2 Schemas
# =============================================================================
#
# These models define the shape of data coming INTO the API.
# FastAPI uses them for:
# 1. Request body validation (automatic 422 errors for invalid data)
# 2. OpenAPI documentation generation (visible at /docs)
#
# DESIGN DECISION: No API keys in request bodies.
# A request may choose the provider, model and endpoint, but the key is
# always resolved from server configuration. ModelSelection forbids
# extra fields, so a body carrying "api_key" is rejected with 422
# instead of silently ignored.
# =============================================================================

from pydantic import BaseModel, ConfigDict, Field

from app.services.llm import ModelConfig


class ModelSelection(BaseModel):
    """
    Per-request model choice.

    `provider` is a provider type ("anthropic", "openai_compatible") or
    an alias such as "deepseek", "kimi" or "ollama".
    """

    provider: str = Field(
        ...,
        min_length=1,
        max_length=50,
        examples=["anthropic", "deepseek", "ollama"],
    )
    model: str = Field(
        ...,
        min_length=1,
        max_length=200,
        examples=["claude-sonnet-4-6", "deepseek-chat", "qwen3:4b"],
    )
    base_url: str | None = Field(
        default=None,
        max_length=500,
        description="Override the provider's default endpoint.",
    )

    model_config = ConfigDict(extra="forbid", protected_namespaces=())

    def to_model_config(self) -> ModelConfig:
        return ModelConfig(
            provider=self.provider,
            model=self.model,
            base_url=self.base_url,
        )


class SearchRequest(BaseModel):
    """
    Request body for POST /search - run a segmented agentic search.

    Example:
        {
            "user_id": "user-42",
            "query": "Compare the latest iPhone and Pixel cameras",
            "use_cache": true
        }
    """

    user_id: str = Field(
        ...,
        min_length=1,
        max_length=200,
        description="Owner of the search; history is kept per user.",
    )
    query: str = Field(
        ...,
        min_length=1,
        max_length=4000,
        description="The natural-language query to answer.",
        examples=["Compare the latest iPhone and Pixel camera specs"],
    )
    model: ModelSelection | None = Field(
        default=None,
        description="Model to use. Defaults to the server's configured model.",
    )
    use_cache: bool = Field(
        default=True,
        description="Reuse cached segmentations and segment results.",
    )
    max_stages: int | None = Field(
        default=None,
        ge=1,
        le=50,
        description="Execute at most this many stages.",
    )

    model_config = ConfigDict(
        protected_namespaces=(),
        json_schema_extra={
            "examples": [
                {
                    "user_id": "user-42",
                    "query": "Compare the latest iPhone and Pixel camera specs",
                    "use_cache": True,
                },
                {
                    "user_id": "user-42",
                    "query": "Who founded Anthropic and when?",
                    "model": {"provider": "deepseek", "model": "deepseek-chat"},
                    "max_stages": 2,
                },
            ]
        },
    )


class SegmentRequest(BaseModel):
    """Request body for POST /search/segment - preview the plan only."""

    query: str = Field(..., min_length=1, max_length=4000)
    model: ModelSelection | None = None
    use_cache: bool = True

    model_config = ConfigDict(protected_namespaces=())
