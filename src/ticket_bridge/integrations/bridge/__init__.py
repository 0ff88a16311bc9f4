"""Message routing and media delivery between the two platforms."""

from .media_pipeline import AttachmentFetcher, MediaConverter, MediaPipeline
from .router import MessageRouter

__all__ = ["AttachmentFetcher", "MediaConverter", "MediaPipeline", "MessageRouter"]
