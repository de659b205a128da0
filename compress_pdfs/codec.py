"""
Image codec service built on Pillow.

Decodes embedded images, optionally downsamples them to a target DPI, and
re-encodes them as JPEG. Failures on a single image are logged and reported
as "no result" (None); they never propagate past the image.
"""

import io
import logging
from dataclasses import dataclass

from PIL import Image

MAX_CANVAS_DIMENSION = 16384
# Larger image side is assumed to span an 11" (letter) page
REFERENCE_PAGE_INCHES = 11
MONOCHROME_THRESHOLD = 128
# PNGs below this are not worth a JPEG conversion
PNG_MIN_SIZE = 1024
# Photo detection samples at most this many pixels
PHOTO_SAMPLE_SIZE = 10000
PHOTO_SCORE_THRESHOLD = 0.3


@dataclass
class ImageItem:
    ref: int
    format: str  # 'jpeg' | 'png' | 'other'
    data: bytes
    width: int
    height: int
    original_size: int
    has_transparency: bool = False  # SMask or Mask on the image object


@dataclass
class ImageResult:
    ref: int
    data: bytes
    width: int
    height: int
    new_size: int
    original_size: int
    saved_bytes: int
    was_downsampled: bool = False
    original_width: int = 0
    original_height: int = 0


def estimate_image_dpi(width, height):
    return round(max(width, height) / REFERENCE_PAGE_INCHES)


def should_downsample(width, height, target_dpi):
    # only when clearly above target (20% margin)
    return estimate_image_dpi(width, height) > target_dpi * 1.2


def downsampled_dimensions(width, height, target_dpi):
    """Return (new_width, new_height, scale) for a target DPI, never upscaling"""
    current_dpi = estimate_image_dpi(width, height)
    if current_dpi <= 0:
        return width, height, 1.0
    scale = target_dpi / current_dpi
    if scale >= 1:
        return width, height, 1.0
    return max(1, round(width * scale)), max(1, round(height * scale)), scale


def within_canvas(width, height):
    return 0 < width <= MAX_CANVAS_DIMENSION and 0 < height <= MAX_CANVAS_DIMENSION


def analyze_image_type(image):
    """
    Score how photographic an image looks, from 0 (graphics) to 1 (photo).

    Photos have many distinct colors and smooth transitions between
    neighbouring pixels; graphics and screenshots have a small palette and
    hard edges. Colors are quantized to 5 bits per channel.

    Returns:
        (is_photo, score)
    """
    rgb = image.convert('RGB')
    width, height = rgb.size
    pixels = rgb.load()
    pixel_count = width * height
    if pixel_count == 0:
        return False, 0.0

    sample_size = min(pixel_count, PHOTO_SAMPLE_SIZE)
    stride = max(1, pixel_count // sample_size)

    colors = set()
    gradients = 0
    edges = 0
    sampled = 0
    for index in range(0, pixel_count, stride):
        if sampled >= sample_size:
            break
        r, g, b = pixels[index % width, index // width]
        colors.add(((r >> 3) << 10) | ((g >> 3) << 5) | (b >> 3))

        if index + 1 < pixel_count:
            nr, ng, nb = pixels[(index + 1) % width, (index + 1) // width]
            diff = abs(r - nr) + abs(g - ng) + abs(b - nb)
            if diff < 30:
                gradients += 1
            if diff > 100:
                edges += 1
        sampled += 1

    unique_ratio = len(colors) / min(sample_size, 32768)
    gradient_ratio = gradients / max(sampled - 1, 1)
    edge_ratio = edges / max(sampled - 1, 1)

    score = unique_ratio * 0.4 + gradient_ratio * 0.4 + (1 - edge_ratio) * 0.2
    return score > PHOTO_SCORE_THRESHOLD, score


def _flatten_to_rgb(image):
    """Composite transparent images onto white so they can be saved as JPEG"""
    if image.mode in ('RGBA', 'LA', 'P'):
        if image.mode == 'P':
            image = image.convert('RGBA')
        background = Image.new('RGB', image.size, (255, 255, 255))
        background.paste(image, mask=image.split()[-1])
        return background
    if image.mode not in ('RGB', 'L'):
        return image.convert('RGB')
    return image


class ImageCodec:
    """Pillow-backed decode/encode used by the incremental compressor"""

    def decode(self, data, fmt=None):
        image = Image.open(io.BytesIO(data))
        image.load()
        return image

    def encode(self, image, fmt='jpeg', quality=75, max_dimension=None):
        if max_dimension and max(image.size) > max_dimension:
            image = image.copy()
            image.thumbnail((max_dimension, max_dimension), Image.Resampling.LANCZOS)

        buffer = io.BytesIO()
        if fmt.lower() in ('jpeg', 'jpg'):
            image = _flatten_to_rgb(image)
            image.save(buffer, format='JPEG', quality=int(quality), optimize=True)
        else:
            image.save(buffer, format=fmt.upper(), optimize=True)
        return buffer.getvalue()

    def recompress(self, item, settings, grayscale=False, monochrome=False):
        """
        Re-encode one JPEG item with the given settings.

        Args:
            item: ImageItem to recompress
            settings: SettingsVector snapshot (quality, DPI, threshold)
            grayscale: convert to 8-bit gray before encoding
            monochrome: threshold to black/white (takes priority over grayscale)

        Returns:
            ImageResult if the new encoding is smaller, otherwise None
        """
        if item.original_size < settings.min_size_threshold:
            return None
        if not within_canvas(item.width, item.height):
            return None

        try:
            image = self.decode(item.data, item.format)
            width, height = image.size

            max_dimension = None
            was_downsampled = False
            if settings.enable_downsampling and should_downsample(width, height, settings.target_dpi):
                new_width, new_height, scale = downsampled_dimensions(width, height, settings.target_dpi)
                if scale < 1:
                    max_dimension = max(new_width, new_height)
                    was_downsampled = True

            if monochrome:
                image = _flatten_to_rgb(image).convert('L').point(
                    lambda value: 255 if value >= MONOCHROME_THRESHOLD else 0
                )
            elif grayscale:
                image = _flatten_to_rgb(image).convert('L')

            new_data = self.encode(image, 'jpeg', settings.quality, max_dimension)
        except Exception as e:
            logging.warning(f"Failed to recompress image {item.ref}: {e}")
            return None

        return self._result_if_smaller(item, new_data, width, height, max_dimension, was_downsampled)

    def convert_png(self, item, quality, skip_photo_detection=False):
        """
        Convert a PNG item to JPEG at the given quality.

        Only opaque, photographic images are converted; graphics and
        screenshots keep their lossless encoding. Returns None when the image
        is skipped, the JPEG isn't smaller, or decoding fails.
        """
        if item.original_size < PNG_MIN_SIZE or not within_canvas(item.width, item.height):
            return None
        if item.has_transparency:
            return None

        try:
            image = self.decode(item.data, item.format)
            if not skip_photo_detection:
                is_photo, score = analyze_image_type(image)
                if not is_photo:
                    logging.debug(f"PNG image {item.ref} looks like a graphic (score {score:.2f}), kept as is")
                    return None
            width, height = image.size
            new_data = self.encode(image, 'jpeg', quality)
        except Exception as e:
            logging.warning(f"Failed to convert PNG image {item.ref}: {e}")
            return None
        return self._result_if_smaller(item, new_data, width, height, None, False)

    def _result_if_smaller(self, item, new_data, width, height, max_dimension, was_downsampled):
        saved = item.original_size - len(new_data)
        if saved <= 0:
            return None

        new_width, new_height = width, height
        if max_dimension:
            ratio = max_dimension / max(width, height)
            new_width, new_height = max(1, round(width * ratio)), max(1, round(height * ratio))

        return ImageResult(
            ref=item.ref,
            data=new_data,
            width=new_width,
            height=new_height,
            new_size=len(new_data),
            original_size=item.original_size,
            saved_bytes=saved,
            was_downsampled=was_downsampled,
            original_width=width,
            original_height=height,
        )
