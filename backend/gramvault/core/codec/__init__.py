"""Image preparation."""

from gramvault.core.codec.content import ContentCodec, content_hash

__all__ = ["ContentCodec", "content_hash"]
