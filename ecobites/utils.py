from fastapi import UploadFile
import io
from PIL import Image, ImageFile, UnidentifiedImageError
from loguru import logger

from ecobites.config import MAX_UPLOAD_BYTES
from ecobites.errors import ValidationError

# Allow loading of truncated images instead of failing hard
ImageFile.LOAD_TRUNCATED_IMAGES = True

INVALID_IMAGE_MESSAGE = "Corrupted image file. Please upload a valid image."


def _open_image(contents: bytes):
    """Return (PIL image, lower-case format) or (None, "")."""
    try:
        img = Image.open(io.BytesIO(contents))
        # Force full decode to catch truncated/corrupt files
        img.load()
        return img, (getattr(img, "format", None) or "").lower()
    except UnidentifiedImageError as err_pil:
        logger.debug(f"Pillow could not identify image: {err_pil}")
    except Exception as err_pil:
        logger.debug(f"Pillow failed to open image: {err_pil}")

    # Incremental parser as a softer fallback for slightly corrupted files
    try:
        parser = ImageFile.Parser()
        parser.feed(contents)
        return parser.close(), ""
    except Exception as err_par:
        logger.debug(f"Pillow parser failed: {err_par}")
    return None, ""


async def validate_image_upload(file: UploadFile, max_bytes: int = MAX_UPLOAD_BYTES):
    content_type = (file.content_type or "").lower()
    if not content_type.startswith("image/"):
        raise ValidationError("Please upload an image file")

    contents = await file.read()
    if not contents:
        raise ValidationError("No image file provided")
    if len(contents) > max_bytes:
        raise ValidationError(f"File too large. Please upload an image of at most {max_bytes // (1024 * 1024)}MB.")

    img, img_format = _open_image(contents)
    if img is None:
        raise ValidationError(INVALID_IMAGE_MESSAGE)

    return contents, {
        "filename": file.filename,
        "content_type": content_type,
        "size": len(contents),
        "format": img_format or "unknown",
        "width": img.width,
        "height": img.height,
    }
