# image_prep.py
import io
import time
from dataclasses import dataclass, replace
from typing import Optional, Tuple

import structlog
from PIL import Image, ImageEnhance, ImageFilter, ImageOps, ImageStat

log = structlog.get_logger()


@dataclass(frozen=True)
class PrepConfig:
    max_long_edge: int = 1024
    jpeg_quality: float = 0.55
    # paper detection
    paper_threshold: int = 170
    min_crop_area: float = 0.20
    min_aspect_ratio: float = 0.20
    # enhancement
    contrast: float = 1.05
    sharpen: float = 0.20
    adaptive_compression: bool = True
    skip_enhancement_for_clear: bool = True


BALANCED = PrepConfig()
FAST = replace(BALANCED, max_long_edge=896, jpeg_quality=0.50, contrast=1.03, sharpen=0.15)
QUALITY = replace(BALANCED, max_long_edge=1280, jpeg_quality=0.75, contrast=1.10, sharpen=0.40,
                  adaptive_compression=False, skip_enhancement_for_clear=False)


def find_paper_box(img: Image.Image, config: PrepConfig) -> Optional[Tuple[int, int, int, int]]:
    """Bounding box of the bright receipt paper, or None if it doesn't look like one."""
    gray = img.convert("L")
    mask = gray.point(lambda v: 255 if v >= config.paper_threshold else 0)
    box = mask.getbbox()
    if not box:
        return None

    left, top, right, bottom = box
    w, h = right - left, bottom - top
    area = (w * h) / float(img.width * img.height)
    if area < config.min_crop_area or area > 0.98:
        return None
    if min(w, h) / float(max(w, h)) < config.min_aspect_ratio:
        return None
    return box


def needs_enhancement(img: Image.Image) -> bool:
    """Too dark or washed out in the centre region."""
    w, h = img.size
    center = img.convert("L").crop((int(w * 0.3), int(h * 0.3), int(w * 0.7), int(h * 0.7)))
    brightness = ImageStat.Stat(center).mean[0] / 255.0
    return brightness < 0.4 or brightness > 0.8


def enhance(img: Image.Image, config: PrepConfig) -> Image.Image:
    img = ImageEnhance.Contrast(img).enhance(config.contrast)
    if config.sharpen > 0:
        img = img.filter(ImageFilter.UnsharpMask(radius=2, percent=int(config.sharpen * 100), threshold=3))
    return img


def downscale(img: Image.Image, max_long_edge: int) -> Image.Image:
    long_edge = max(img.size)
    if long_edge <= max_long_edge or long_edge == 0:
        return img
    scale = max_long_edge / float(long_edge)
    new_size = (max(1, round(img.width * scale)), max(1, round(img.height * scale)))
    return img.resize(new_size, Image.Resampling.LANCZOS)


def normalize_image(data: bytes, config: PrepConfig = BALANCED) -> bytes:
    """
    Re-orient, crop to the receipt when one is found, lightly enhance,
    downscale and recompress. Returns JPEG bytes ready for upload.
    """
    started = time.monotonic()
    img = Image.open(io.BytesIO(data))
    img = ImageOps.exif_transpose(img).convert("RGB")

    box = find_paper_box(img, config)
    if box is not None:
        img = img.crop(box)

    if not config.skip_enhancement_for_clear or needs_enhancement(img):
        img = enhance(img, config)

    img = downscale(img, config.max_long_edge)

    quality = config.jpeg_quality
    if config.adaptive_compression and box is None:
        # no crop: keep more detail, the receipt may be small in frame
        quality = min(quality + 0.10, 0.75)

    out = io.BytesIO()
    img.save(out, format="JPEG", quality=int(round(quality * 100)), optimize=True)
    result = out.getvalue()

    log.info("image_normalized", cropped=box is not None, size=img.size,
             kb=len(result) // 1024, elapsed=round(time.monotonic() - started, 3))
    return result
