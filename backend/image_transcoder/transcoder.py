"""
Image Transcoder

Handles:
- Decoding JPEG/PNG (and anything else Pillow reads)
- Flattening transparency onto a white background
- Re-encoding as JPEG at a target quality
- Keeping the original bytes when re-encoding does not shrink them
"""

import logging
from dataclasses import dataclass
from io import BytesIO

from PIL import Image, UnidentifiedImageError

from image_cache.exceptions import TranscodeError

logger = logging.getLogger(__name__)

# Pillow format name -> cache file extension
FORMAT_TO_EXT = {
    "JPEG": "jpg",
    "PNG": "png",
}


@dataclass
class TranscodeResult:
    """Result of transcoding one image."""
    data: bytes
    extension: str          # jpg or png
    original_size: int
    reencoded: bool         # False when the original bytes were kept

    @property
    def compressed_size(self) -> int:
        return len(self.data)


class ImageTranscoder:
    """
    Recompresses images to JPEG.

    Usage:
        transcoder = ImageTranscoder()
        result = transcoder.transcode(data, quality=60)
    """

    def transcode(self, data: bytes, quality: int) -> TranscodeResult:
        """
        Re-encode an image as JPEG.

        Args:
            data: Raw image bytes
            quality: JPEG quality (1-100)

        Returns:
            TranscodeResult with the smaller of the re-encoded and original data

        Raises:
            TranscodeError: data is not a decodable image
        """
        try:
            img = Image.open(BytesIO(data))
            img.load()
        except (UnidentifiedImageError, Image.DecompressionBombError, OSError, ValueError) as e:
            raise TranscodeError(f"Failed to decode image: {e}") from e

        original_ext = FORMAT_TO_EXT.get(img.format or "", "jpg")

        try:
            flat = self._flatten(img)
            output = BytesIO()
            flat.save(output, format="JPEG", quality=quality)
        except (OSError, ValueError) as e:
            logger.warning(f"[Transcoder] Encode failed, keeping original bytes: {e}")
            return TranscodeResult(data, original_ext, len(data), reencoded=False)

        encoded = output.getvalue()
        if len(encoded) > len(data):
            logger.debug(
                f"[Transcoder] Re-encoded image larger ({len(encoded)} > {len(data)} bytes), keeping original"
            )
            return TranscodeResult(data, original_ext, len(data), reencoded=False)

        logger.info(f"[Transcoder] {len(data)//1024}KB -> {len(encoded)//1024}KB (quality {quality})")
        return TranscodeResult(encoded, "jpg", len(data), reencoded=True)

    @staticmethod
    def _flatten(img: Image.Image) -> Image.Image:
        """Composite onto white so JPEG output has no alpha."""
        if img.mode == "P":
            img = img.convert("RGBA")
        if img.mode in ("RGBA", "LA"):
            background = Image.new("RGB", img.size, (255, 255, 255))
            background.paste(img, mask=img.split()[-1])
            return background
        if img.mode != "RGB":
            return img.convert("RGB")
        return img
