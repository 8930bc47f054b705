# =============================================================================
# API Package - FastAPI Route Handlers
# =============================================================================
#   - search.py: POST /search and POST /search/segment
#   - history.py: past searches and aggregate stats
#   - deps.py: provider factory, cache and sink dependencies
# =============================================================================
