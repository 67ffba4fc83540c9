"""
Image Transcoder Module

Recompresses downloaded images before they are published to the cache.
"""

from .transcoder import ImageTranscoder, TranscodeResult

__all__ = ["ImageTranscoder", "TranscodeResult"]
