import base64
import binascii
import logging
import re
from io import BytesIO
from typing import Dict, Optional, Tuple
from uuid import uuid4

from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import JSONResponse
from google.cloud import storage as gcs
from PIL import Image, UnidentifiedImageError
from pydantic import BaseModel, Field

from . import auth, config, genai_client

logger = logging.getLogger(__name__)

router = APIRouter()

MAX_UPLOAD_BYTES = 10 * 1024 * 1024
MAX_WIDTH = 2400
ORIGINAL_QUALITY = 90

# (width, height, quality, suffix); variants fit inside the box
IMAGE_VARIANTS: Dict[str, Tuple[int, int, int, str]] = {
    "thumbnail": (150, 150, 60, "_thumb"),
    "card": (400, 300, 75, "_card"),
    "hero": (1200, 600, 85, "_hero"),
}

BRAND_STYLE = (
    "hyperrealistic professional photography, bright natural lighting with soft shadows, "
    "clean modern aesthetic, purple and blue color accents (#7C3AED and #3B82F6)"
)
ASSET_CONFIGS = {
    "serviceCard": ("1:1", "Professional service image for {subject}, square format, {style}"),
    "serviceHero": ("16:9", "Wide hero banner image for {subject}, cinematic composition, {style}"),
    "serviceThumbnail": ("4:3", "Professional thumbnail for {subject}, clear focused subject, {style}"),
    "categoryBanner": ("16:9", "Modern category banner for {subject} services, abstract professional design, {style}"),
    "icon": ("1:1", "Minimalist icon representing {subject}, flat design with gradient, {style}"),
    "illustration": ("1:1", "Modern vector illustration of {subject}, isometric style, {style}"),
}
STYLE_MODIFIERS = {
    "modern": "ultra-modern contemporary style",
    "classic": "timeless classic professional style",
    "minimal": "minimalist clean design aesthetic",
    "premium": "luxury high-end premium feel",
    "friendly": "approachable warm friendly atmosphere",
    "tech": "high-tech futuristic design elements",
    "eco": "eco-friendly sustainable green design",
}
ASSET_RESTRICTIONS = ", no people or human figures, no text or typography, no logos or brand marks"

_SAFE_PATH = re.compile(r"^[A-Za-z0-9_\-/]+$")
_SAFE_NAME = re.compile(r"[^A-Za-z0-9_\-]")

_gcs: Optional[gcs.Client] = None


def _bucket():
    global _gcs
    if not config.STORAGE_BUCKET:
        raise RuntimeError("STORAGE_BUCKET is not configured")
    if _gcs is None:
        _gcs = gcs.Client()
    return _gcs.bucket(config.STORAGE_BUCKET)


def upload_bytes(path: str, data: bytes, content_type: str = "image/jpeg") -> str:
    blob = _bucket().blob(path)
    blob.cache_control = "public, max-age=31536000"
    blob.upload_from_string(data, content_type=content_type)
    return blob.public_url


def _jpeg(img: Image.Image, quality: int) -> bytes:
    buf = BytesIO()
    img.convert("RGB").save(buf, format="JPEG", quality=quality, progressive=True)
    return buf.getvalue()


def resize_to_width(img: Image.Image, max_width: int = MAX_WIDTH) -> Image.Image:
    if img.width <= max_width:
        return img
    height = round(img.height * max_width / img.width)
    return img.resize((max_width, height), Image.LANCZOS)


def make_variant(img: Image.Image, width: int, height: int, quality: int) -> bytes:
    copy = img.copy()
    copy.thumbnail((width, height), Image.LANCZOS)
    return _jpeg(copy, quality)


def decode_data_url(data: str) -> Tuple[bytes, Optional[str]]:
    mime_type = None
    if data.startswith("data:"):
        header, _, data = data.partition(",")
        mime_type = header[5:].split(";")[0] or None
    try:
        return base64.b64decode(data, validate=True), mime_type
    except (binascii.Error, ValueError):
        raise HTTPException(status_code=400, detail="File must be base64 encoded")


def to_jpeg_data_url(image_bytes: bytes, max_side: int = 1024) -> Tuple[str, bytes]:
    img = Image.open(BytesIO(image_bytes)).convert("RGB")
    if max(img.size) > max_side:
        img.thumbnail((max_side, max_side), Image.LANCZOS)
    jpeg_bytes = _jpeg(img, 85)
    return f"data:image/jpeg;base64,{base64.b64encode(jpeg_bytes).decode('utf-8')}", jpeg_bytes


def process_upload(raw: bytes, path: str, filename: str, generate_variants: bool) -> Dict[str, str]:
    try:
        img = Image.open(BytesIO(raw))
        img.load()
    except (UnidentifiedImageError, OSError):
        raise HTTPException(status_code=400, detail="File must be an image")

    stem = _SAFE_NAME.sub("_", filename.rsplit(".", 1)[0]) or uuid4().hex
    base = f"{path.strip('/')}/{stem}"
    if img.width > MAX_WIDTH:
        original = _jpeg(resize_to_width(img), ORIGINAL_QUALITY)
        urls = {"original": upload_bytes(f"{base}.jpg", original)}
    else:
        fmt = (img.format or "JPEG").lower()
        urls = {"original": upload_bytes(f"{base}.{'jpg' if fmt == 'jpeg' else fmt}", raw, Image.MIME.get(img.format, "image/jpeg"))}
    if generate_variants:
        for name, (width, height, quality, suffix) in IMAGE_VARIANTS.items():
            urls[name] = upload_bytes(f"{base}{suffix}.jpg", make_variant(img, width, height, quality))
    return urls


class UploadRequest(BaseModel):
    file: str = Field(..., description="Base64 payload or data URL")
    filename: str = Field("upload.jpg", max_length=200)
    contentType: Optional[str] = None
    path: str = "uploads"
    generateVariants: bool = True


class AssetRequest(BaseModel):
    subject: str = ""
    assetType: str = ""
    styleModifier: Optional[str] = None
    store: bool = False


def build_asset_prompt(subject: str, asset_type: str, style_modifier: Optional[str] = None) -> Tuple[str, str]:
    aspect_ratio, template = ASSET_CONFIGS[asset_type]
    style = STYLE_MODIFIERS.get(style_modifier or "", BRAND_STYLE)
    prompt = template.format(subject=subject, style=style) + ASSET_RESTRICTIONS
    return f"{prompt}. Aspect ratio {aspect_ratio}.", aspect_ratio


@router.post(f"{config.API_PREFIX}/upload/image")
def upload_image(request: UploadRequest, user=Depends(auth.require_permission())):
    raw, sniffed = decode_data_url(request.file)
    content_type = request.contentType or sniffed or "image/jpeg"
    if not content_type.startswith("image/"):
        raise HTTPException(status_code=400, detail="File must be an image")
    if len(raw) > MAX_UPLOAD_BYTES:
        raise HTTPException(status_code=400, detail="File size must be less than 10MB")
    if not _SAFE_PATH.match(request.path) or ".." in request.path:
        raise HTTPException(status_code=400, detail="Invalid upload path")
    try:
        urls = process_upload(raw, request.path, request.filename, request.generateVariants)
    except HTTPException:
        raise
    except Exception as exc:
        logger.error("Image upload failed for %s: %s", user["uid"], exc, exc_info=True)
        return JSONResponse({"success": False, "error": "Failed to upload image"}, status_code=500)
    return {"success": True, "urls": urls}


@router.post(f"{config.API_PREFIX}/generate-asset")
def generate_asset(request: AssetRequest):
    if not request.subject or not request.assetType:
        raise HTTPException(status_code=400, detail="Missing required fields")
    if request.assetType not in ASSET_CONFIGS:
        raise HTTPException(status_code=400, detail="Invalid asset type")
    if not config.gemini_configured():
        return JSONResponse({"error": "AI service not configured"}, status_code=503)

    prompt, aspect_ratio = build_asset_prompt(request.subject, request.assetType, request.styleModifier)
    try:
        model_text, img_bytes = genai_client.generate_image(prompt)
        if not img_bytes:
            return JSONResponse(
                {"error": "Image generation failed: no image in stream", "model_text": model_text},
                status_code=502,
            )
        data_url, jpeg_bytes = to_jpeg_data_url(img_bytes)
        stored_url = None
        if request.store:
            stored_url = upload_bytes(f"generated/{request.assetType}/{uuid4().hex}.jpg", jpeg_bytes)
    except Exception as exc:
        logger.error("Asset generation failed: %s", exc, exc_info=True)
        return JSONResponse({"error": "Failed to generate asset"}, status_code=500)

    return {
        "url": data_url,
        "storedUrl": stored_url,
        "prompt": prompt,
        "aspectRatio": aspect_ratio,
        "assetType": request.assetType,
        "subject": request.subject,
        "size": len(jpeg_bytes),
    }
