"""Image host client (Cloudinary).

Only the returned ``secure_url`` is persisted; raw image bytes never touch
the database.
"""

import os
import time

import cloudinary
import cloudinary.exceptions
import cloudinary.uploader
from flask import current_app

from errors import InvalidInputError, UpstreamError


# Max 500x500, automatic quality.
UPLOAD_TRANSFORMATION = [
    {"width": 500, "height": 500, "crop": "limit"},
    {"quality": "auto"},
]


def _cloud_name() -> str:
    return os.getenv("CLOUDINARY_CLOUD_NAME", "").strip()


def _api_key() -> str:
    return os.getenv("CLOUDINARY_API_KEY", "").strip()


def _api_secret() -> str:
    return os.getenv("CLOUDINARY_API_SECRET", "").strip()


def upload_enabled() -> bool:
    return bool(_cloud_name() and _api_key() and _api_secret())


def _configure() -> None:
    cloudinary.config(
        cloud_name=_cloud_name(),
        api_key=_api_key(),
        api_secret=_api_secret(),
        secure=True,
    )


def _as_data_uri(image_data) -> str:
    if not isinstance(image_data, str) or not image_data.strip():
        raise InvalidInputError("Image data is required")
    image_data = image_data.strip()
    if "base64," in image_data:
        image_data = image_data.split("base64,", 1)[1]
    return f"data:image/jpeg;base64,{image_data}"


def upload_image(image_data, prefix: str, folder: str = "profile_images") -> str:
    """Upload a base64 image (or data URI) and return its URL.

    The public id is ``<prefix>_<ms timestamp>`` so every upload gets a
    fresh URL and CDN caches never serve the previous picture.
    """
    file = _as_data_uri(image_data)
    if not upload_enabled():
        raise UpstreamError("Image upload is not configured")

    _configure()
    try:
        result = cloudinary.uploader.upload(
            file,
            folder=folder,
            public_id=f"{prefix}_{int(time.time() * 1000)}",
            overwrite=True,
            resource_type="image",
            transformation=UPLOAD_TRANSFORMATION,
        )
    except cloudinary.exceptions.Error as e:
        current_app.logger.error("Cloudinary upload failed: %s", e)
        raise UpstreamError("Failed to upload image", detail=str(e))

    secure_url = (result or {}).get("secure_url")
    if not secure_url:
        raise UpstreamError("Failed to upload image")
    current_app.logger.info("Image uploaded to Cloudinary: %s", secure_url)
    return secure_url
