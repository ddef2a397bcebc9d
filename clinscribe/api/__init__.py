"""
API orchestration boundary for the scribe service.

Design intent:
- Expose thin, typed endpoints for session, chunk, transcript and note flows.
- Keep request validation explicit and failure modes predictable.
"""
