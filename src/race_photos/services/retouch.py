"""Automatic retouching of display renditions."""

from PIL import ImageEnhance, ImageFilter, ImageOps

from race_photos.services.renditions import encode_webp, open_image

BRIGHTNESS = 1.02
SATURATION = 1.05


def retouch_display(data: bytes, quality: int = 80) -> bytes:
    """Stretch contrast, lift exposure and colour slightly, then sharpen."""
    with open_image(data) as image:
        rgb = image.convert("RGB")
    adjusted = ImageOps.autocontrast(rgb, cutoff=0.5)
    adjusted = ImageEnhance.Brightness(adjusted).enhance(BRIGHTNESS)
    adjusted = ImageEnhance.Color(adjusted).enhance(SATURATION)
    adjusted = adjusted.filter(ImageFilter.UnsharpMask(radius=0.8, percent=60))
    return encode_webp(adjusted, quality)
