# planche/infrastructure/cloudinary/upload_file.py
from io import BytesIO
from typing import Optional
import cloudinary, cloudinary.api, cloudinary.exceptions, cloudinary.uploader, cloudinary.utils
from planche.config.settings import settings


# Configure once (CLOUDINARY_URL in the environment is picked up by the SDK itself)
if settings.CLOUDINARY_CLOUD_NAME:
    cloudinary.config(
        cloud_name=settings.CLOUDINARY_CLOUD_NAME,
        api_key=settings.CLOUDINARY_API_KEY,
        api_secret=settings.CLOUDINARY_API_SECRET,
        secure=True,
    )

def _full_id(public_id: str, folder: str) -> str:
    return f"{folder}/{public_id}" if folder else public_id

def upload_jpeg_bytes(
    data: bytes,
    public_id: str,
    folder: str = "planches",
    overwrite: bool = True,
    tags: Optional[list[str]] = None,
) -> str:
    buf = BytesIO(data)
    res = cloudinary.uploader.upload(
        buf,
        resource_type="image",
        folder=folder,
        public_id=public_id,
        overwrite=overwrite,
        format="jpg",
        tags=tags or ["planche"],
    )
    return res["secure_url"]

def planche_exists(public_id: str, folder: str = "planches") -> bool:
    try:
        cloudinary.api.resource(_full_id(public_id, folder), resource_type="image")
        return True
    except cloudinary.exceptions.NotFound:
        return False

def planche_url(public_id: str, folder: str = "planches") -> str:
    url, _ = cloudinary.utils.cloudinary_url(_full_id(public_id, folder), secure=True, format="jpg")
    return url
