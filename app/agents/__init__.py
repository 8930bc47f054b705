# =============================================================================
# Agents Package - Segmentation and Staged Execution Engine
# =============================================================================
#   - segmenter.py: query → segments + execution graph (Kahn layering),
#     cached by query fingerprint, whole-query fallback
#   - scheduler.py: runs stages in order with bounded concurrency and a
#     search deadline
#   - runner.py: one segment: prompt with dependency findings, parse,
#     score, escalate once when confidence is low
#   - synthesizer.py: combines segment results into one answer
#   - orchestrator.py: LangGraph graph segment → execute → synthesize
#   - types.py / parsing.py: shared data types and reply parsing
# =============================================================================
