"""
Incremental image compression with budget-aware streaming escalation.

Instead of compressing the whole PDF and retrying with harsher settings, the
images are processed largest-first in small batches while a byte budget is
tracked. When the stream is on course to overshoot, the remaining images get
harsher settings before they are touched.

Two levels of escalation:
1. Progressive: between batches, escalate settings for the remaining images
2. Object-level: after the stream, recompress the largest results harder

The budget is owned by the control loop. Worker threads only receive an
immutable settings snapshot and return results, which are folded into the
budget in batch order.
"""

import logging
import math
import os
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field

from compress_pdfs.errors import JobCancelled
from compress_pdfs.settings import MIN_QUALITY, round_half_up

BATCH_SIZE = int(os.getenv('PDF_BATCH_SIZE', '2'))
MAX_WORKERS = int(os.getenv('PDF_MAX_WORKERS', '2'))

# Safety factor leaving room for container overhead when images are re-embedded
IMAGE_BUDGET_FACTOR = 0.9
MAX_IMAGE_RATIO = 0.95
ESCALATION_THRESHOLD = 1.1
REESCALATION_SHARE = 0.3
REESCALATION_MAX_IMAGES = 10


@dataclass
class CompressionBudget:
    original_size: int
    target_bytes: int
    baseline_size: int
    estimated_overhead: int
    image_budget_bytes: int
    image_bytes_so_far: int = 0
    images_processed: int = 0
    total_images: int = 0
    escalated: bool = False
    current_tier: int = 0

    def to_dict(self):
        return dict(self.__dict__)


@dataclass
class IncrementalResult:
    results: list
    budget: CompressionBudget
    settings_used: object
    jpeg_savings: int = 0
    downsample_savings: int = 0
    png_savings: int = 0
    escalations: list = field(default_factory=list)


def estimate_image_budget(target_bytes, baseline_size, total_image_size, original_size):
    """
    Estimate how many bytes all images together may use.

    Non-image content (structure, fonts, streams) is treated as fixed, so the
    image budget is what's left of the target after it, minus 10% headroom.
    """
    if original_size <= 0:
        return 0
    image_ratio = min(total_image_size / original_size, MAX_IMAGE_RATIO)
    non_image_size = original_size * (1 - image_ratio)
    return round_half_up(max(0, (target_bytes - non_image_size) * IMAGE_BUDGET_FACTOR))


def create_budget(original_size, target_bytes, baseline_size, total_image_size, total_images=0):
    image_budget = estimate_image_budget(target_bytes, baseline_size, total_image_size, original_size)
    return CompressionBudget(
        original_size=original_size,
        target_bytes=target_bytes,
        baseline_size=baseline_size,
        estimated_overhead=max(0, original_size - total_image_size),
        image_budget_bytes=image_budget,
        total_images=total_images,
    )


def overshoot_ratio(budget):
    """
    Ratio of bytes used per image so far to the bytes still available per
    remaining image. Above 1 the stream is on track to exceed the budget.

    Returns None when no images remain (nothing left to escalate).
    """
    remaining = budget.total_images - budget.images_processed
    if remaining <= 0:
        return None

    budget_remaining = max(0, budget.image_budget_bytes - budget.image_bytes_so_far)
    avg_budget_per_image = budget_remaining / remaining

    if budget.images_processed > 0:
        avg_used_per_image = budget.image_bytes_so_far / budget.images_processed
    else:
        avg_used_per_image = 0

    if avg_used_per_image <= 0:
        return 1.0
    return avg_used_per_image / max(avg_budget_per_image, 1)


def escalate_image_settings(settings, budget):
    """
    Return harsher settings scaled to how far over budget the stream is.

    Quality scales with 1/overshoot (1.5x -> 67%, 2x -> 50%), DPI drops to 96
    above 1.5x and to 72 above 2x, and downsampling is forced on above 1.3x.
    Within 10% of budget the settings are returned unchanged.
    """
    ratio = overshoot_ratio(budget)
    if ratio is None or ratio <= ESCALATION_THRESHOLD:
        return settings

    quality_scale = max(0.1, 1 / ratio)
    quality = max(MIN_QUALITY, round_half_up(settings.quality * quality_scale))

    if ratio > 2:
        target_dpi = 72
    elif ratio > 1.5:
        target_dpi = min(settings.target_dpi, 96)
    else:
        target_dpi = settings.target_dpi

    return settings.copy(
        quality=quality,
        target_dpi=target_dpi,
        enable_downsampling=True if ratio > 1.3 else settings.enable_downsampling,
    )


def _check_cancelled(cancellation_checker):
    if cancellation_checker and cancellation_checker():
        raise JobCancelled('Compression job was cancelled')


def _report(progress_callback, message, percent=None):
    if progress_callback:
        progress_callback('images', message, percent)


def _run_item(operation, item, *args):
    """Run one codec call; an exception counts as no result for that image"""
    try:
        return operation(item, *args)
    except Exception as e:
        logging.warning(f"Image {item.ref} failed: {e}")
        return None


def _escalate_before_batch(settings, budget, escalations):
    """
    Run the between-batch escalation checks.

    The first check fires once per run; once escalated, a second check runs
    against the same budget snapshot, so one boundary can apply two steps.
    """
    if budget.images_processed > 0 and not budget.escalated:
        escalated = escalate_image_settings(settings, budget)
        if escalated.quality < settings.quality:
            budget.escalated = True
            budget.current_tier += 1
            logging.info(
                f"Mid-stream escalation at image {budget.images_processed}/{budget.total_images}: "
                f"quality {settings.quality} -> {escalated.quality}, "
                f"DPI {settings.target_dpi} -> {escalated.target_dpi}"
            )
            escalations.append({'at_image': budget.images_processed, 'quality': escalated.quality,
                                'target_dpi': escalated.target_dpi})
            settings = escalated

    if budget.escalated and budget.images_processed > 0:
        further = escalate_image_settings(settings, budget)
        if further.quality < settings.quality:
            budget.current_tier += 1
            logging.info(f"Further escalation: quality {settings.quality} -> {further.quality}")
            escalations.append({'at_image': budget.images_processed, 'quality': further.quality,
                                'target_dpi': further.target_dpi})
            settings = further

    return settings


def process_images_incrementally(jpeg_items, png_items, settings, budget, codec,
                                 progress_callback=None, cancellation_checker=None,
                                 batch_size=BATCH_SIZE, max_workers=MAX_WORKERS):
    """
    Process images with budget tracking, escalating mid-stream when the budget
    is being exceeded.

    Args:
        jpeg_items: re-encodable ImageItems (JPEG)
        png_items: convertible ImageItems (PNG -> JPEG)
        settings: initial SettingsVector (not mutated)
        budget: CompressionBudget owned by this run, updated in place
        codec: service with recompress(item, settings, grayscale, monochrome)
            and convert_png(item, quality)
        progress_callback: optional callable(stage, message, percent)
        cancellation_checker: optional callable returning True once cancelled
        batch_size: images per batch; budget is checked between batches
        max_workers: worker threads per batch

    Returns:
        IncrementalResult

    Raises:
        JobCancelled: if cancellation is observed between batches
    """
    results = []
    escalations = []
    jpeg_savings = 0
    downsample_savings = 0
    png_savings = 0

    grayscale = settings.enabled('convert_to_grayscale')
    monochrome = settings.enabled('convert_to_monochrome')
    process_jpegs = bool(jpeg_items) and settings.enabled('recompress_images')
    process_pngs = bool(png_items) and settings.enabled('png_to_jpeg')

    budget.total_images = (len(jpeg_items) if process_jpegs else 0) + (len(png_items) if process_pngs else 0)
    budget.images_processed = 0
    budget.image_bytes_so_far = 0
    total = budget.total_images

    # Phase 1: JPEG images with adaptive quality
    if process_jpegs:
        logging.info(
            f"Starting incremental JPEG processing "
            f"(budget: {round(budget.image_budget_bytes / 1024)}KB for {total} images)"
        )
        _report(progress_callback, f"Processing {len(jpeg_items)} JPEG images incrementally...", 0)

        # Largest first for better budget prediction
        ordered = sorted(jpeg_items, key=lambda item: item.original_size, reverse=True)

        with ThreadPoolExecutor(max_workers=max(1, max_workers)) as executor:
            for start in range(0, len(ordered), max(1, batch_size)):
                _check_cancelled(cancellation_checker)

                previous_quality = settings.quality
                settings = _escalate_before_batch(settings, budget, escalations)
                if settings.quality < previous_quality:
                    _report(progress_callback,
                            f"Budget pressure detected, escalating compression (quality: {settings.quality})...")

                batch = ordered[start:start + max(1, batch_size)]
                snapshot = settings.copy()
                # map() yields in submission order, so folding is deterministic
                batch_results = list(executor.map(
                    lambda item: _run_item(codec.recompress, item, snapshot, grayscale, monochrome), batch
                ))

                for item, result in zip(batch, batch_results):
                    budget.images_processed += 1
                    if result is not None:
                        results.append(result)
                        jpeg_savings += result.saved_bytes
                        budget.image_bytes_so_far += result.new_size
                        if result.was_downsampled and result.original_width and result.original_height:
                            original_pixels = result.original_width * result.original_height
                            new_pixels = result.width * result.height
                            reduction = 1 - (new_pixels / original_pixels)
                            downsample_savings += round_half_up(result.saved_bytes * reduction)
                    else:
                        # skipped or failed, still charged at original size
                        budget.image_bytes_so_far += item.original_size

                percent = round_half_up(budget.images_processed / total * 100) if total else 100
                _report(progress_callback, f"Processed {budget.images_processed}/{total} images", percent)

    # Phase 2: PNG -> JPEG at the current (possibly escalated) quality
    if process_pngs:
        _check_cancelled(cancellation_checker)
        _report(progress_callback, f"Converting {len(png_items)} PNG images to JPEG...")
        quality = settings.quality

        with ThreadPoolExecutor(max_workers=max(1, max_workers)) as executor:
            for start in range(0, len(png_items), max(1, batch_size)):
                _check_cancelled(cancellation_checker)
                batch = png_items[start:start + max(1, batch_size)]
                converted = list(executor.map(lambda item: _run_item(codec.convert_png, item, quality), batch))
                for item, result in zip(batch, converted):
                    budget.images_processed += 1
                    if result is not None:
                        results.append(result)
                        png_savings += result.saved_bytes
                        budget.image_bytes_so_far += result.new_size
                    else:
                        budget.image_bytes_so_far += item.original_size

    # Phase 3: object-level re-escalation for the largest results
    if budget.image_bytes_so_far > budget.image_budget_bytes and results:
        _check_cancelled(cancellation_checker)
        logging.info("Still over budget after initial pass. Attempting object-level re-escalation...")
        _report(progress_callback, 'Re-compressing oversized images...')
        jpeg_savings += _reescalate(results, jpeg_items, settings, budget, codec,
                                    grayscale, monochrome, cancellation_checker)

    return IncrementalResult(
        results=results,
        budget=budget,
        settings_used=settings,
        jpeg_savings=jpeg_savings,
        downsample_savings=downsample_savings,
        png_savings=png_savings,
        escalations=escalations,
    )


def _reescalate(results, jpeg_items, settings, budget, codec, grayscale, monochrome, cancellation_checker):
    """Recompress the largest results at half quality and 72 DPI; returns extra bytes saved"""
    oversized = sorted(range(len(results)), key=lambda idx: results[idx].new_size, reverse=True)
    count = min(math.ceil(len(oversized) * REESCALATION_SHARE), REESCALATION_MAX_IMAGES)

    harsh_quality = max(MIN_QUALITY, round_half_up(settings.quality * 0.5))
    harsh = settings.copy(quality=harsh_quality, target_dpi=72, enable_downsampling=True)
    sources = {item.ref: item for item in jpeg_items if item.format == 'jpeg'}

    logging.info(f"Re-compressing top {count} images at quality {harsh_quality}")
    extra_savings = 0

    for position, idx in enumerate(oversized[:count], start=1):
        _check_cancelled(cancellation_checker)
        current = results[idx]
        source = sources.get(current.ref)
        if source is None:
            continue

        retry = _run_item(codec.recompress, source, harsh, grayscale, monochrome)
        if retry is not None and retry.new_size < current.new_size:
            delta = current.new_size - retry.new_size
            extra_savings += delta
            budget.image_bytes_so_far -= delta
            results[idx] = retry
            logging.info(f"Re-compressed image {current.ref}: {current.new_size} -> {retry.new_size} bytes")

        if budget.image_bytes_so_far <= budget.image_budget_bytes:
            logging.info(f"Budget met after re-compressing {position} images")
            break

    return extra_savings
