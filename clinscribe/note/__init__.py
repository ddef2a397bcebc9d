"""
Note generation boundary.

Design intent:
- Turn a complete diarized transcript into a clinician-editable note.
- Degrade unparseable generator output to plain text instead of failing.
- Keep the hosted function wire format behind the service protocols.
"""
