import os
from typing import Dict, Optional
from uuid import uuid4

from flask import current_app
from PIL import Image, UnidentifiedImageError

from .errors import BadRequestError

MIN_FILE_SIZE_BYTES = 2 * 1024
ALLOWED_IMAGE_FORMATS = {"jpeg", "png", "gif"}
EXTENSION_BY_MIMETYPE = {
    "image/png": ".png",
    "image/jpg": ".jpg",
    "image/jpeg": ".jpg",
    "image/gif": ".gif",
}


def remove_file(path: Optional[str]) -> None:
    if not path:
        return
    try:
        os.remove(path)
    except FileNotFoundError:
        return
    except OSError as exc:
        current_app.logger.warning("Unable to remove rejected upload %s: %s", path, exc)


def read_image_metadata(path: str) -> Dict[str, object]:
    try:
        with Image.open(path) as image:
            image_format = (image.format or "").lower()
            width, height = image.size
    except (UnidentifiedImageError, OSError):
        raise BadRequestError("Invalid image file") from None

    if image_format not in ALLOWED_IMAGE_FORMATS:
        raise BadRequestError("Unsupported image format")
    if width <= 0 or height <= 0:
        raise BadRequestError("Invalid image file")

    return {
        "format": image_format,
        "width": width,
        "height": height,
        "size": os.path.getsize(path),
    }


def save_uploaded_image(image_file, upload_folder: str) -> Dict[str, object]:
    """Store an uploaded image under a random name and return its metadata.

    The extension comes from the declared MIME type and the stored file is
    removed again if Pillow does not accept it as a real JPEG, PNG or GIF.
    """
    if not image_file or not getattr(image_file, "filename", ""):
        raise BadRequestError("File was not uploaded")

    extension = EXTENSION_BY_MIMETYPE.get((image_file.mimetype or "").lower())
    if not extension:
        raise BadRequestError("File was not uploaded")

    os.makedirs(upload_folder, exist_ok=True)
    filename = f"{uuid4().hex}{extension}"
    destination = os.path.join(upload_folder, filename)
    image_file.save(destination)

    try:
        if os.path.getsize(destination) < MIN_FILE_SIZE_BYTES:
            raise BadRequestError("File is too small")
        metadata = read_image_metadata(destination)
    except BadRequestError:
        remove_file(destination)
        raise

    return {"filename": filename, "metadata": metadata}
