"""Watermarked public thumbnails."""


from PIL import Image, ImageDraw, ImageFont

from race_photos.services.renditions import bounded_copy, encode_jpeg, open_image

_ANGLE = 30
_OPACITY = int(255 * 0.3)
_MIN_FONT_SIZE = 16


def render_watermarked_thumbnail(
    data: bytes, text: str, max_dimension: int = 1200, quality: int = 80
) -> bytes:
    """Overlay repeated diagonal text on a bounded copy of the image."""
    with open_image(data) as image:
        base = bounded_copy(image.convert("RGB"), max_dimension)
    width, height = base.size
    font_size = max(round(width / 20), _MIN_FONT_SIZE)
    font = ImageFont.load_default(size=font_size)

    # Draw on an oversized canvas so the rotated tiles still cover the corners.
    span = int((width**2 + height**2) ** 0.5)
    layer = Image.new("RGBA", (span * 2, span * 2), (255, 255, 255, 0))
    draw = ImageDraw.Draw(layer)
    for y in range(0, span * 2, font_size * 3):
        for x in range(0, span * 2, font_size * 8):
            draw.text((x, y), text, font=font, fill=(255, 255, 255, _OPACITY))
    rotated = layer.rotate(_ANGLE, resample=Image.Resampling.BICUBIC)
    left = (rotated.width - width) // 2
    top = (rotated.height - height) // 2
    overlay = rotated.crop((left, top, left + width, top + height))

    composed = Image.alpha_composite(base.convert("RGBA"), overlay)
    return encode_jpeg(composed.convert("RGB"), quality)
