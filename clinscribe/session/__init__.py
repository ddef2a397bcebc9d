"""
Session lifecycle boundary.

Design intent:
- Keep edited session fields and remote changes consistent without clobbering typing.
- Wire one encounter's capture, transcript and note pipeline behind a single owner.
"""
