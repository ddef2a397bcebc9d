"""
clinscribe package.

Design intent:
- Capture a clinical encounter, label speakers and persist transcript chunks durably.
- Turn the finished transcript into a structured note through a staged pipeline.
- Keep domain modules (capture/transcript/note/session) independent from the HTTP host.
"""
