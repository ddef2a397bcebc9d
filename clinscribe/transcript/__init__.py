"""
Transcript module boundary.

Design intent:
- Label final fragments with a speaker before anything is stored.
- Keep an ordered, durably persisted chunk list per session.
"""
