"""
Guide reader core package.

This package focuses on the indexing and retrieval subsystem for very large
plain-text guides. It exposes dataclasses for guide records, a streaming
line-offset parser with heading detection, a versioned index store, a bounded
window cache, and the position/bookmark/collection services that the reading
surface consumes.
"""
