"""
One full compression pass over a PDF.

Runs the image stream through the incremental compressor, applies the enabled
structural methods one at a time, and finishes with the save options the
settings ask for. Every method gets a measurement; disabled or unsupported
ones are reported as zero savings.
"""

import logging
from dataclasses import dataclass, field
from typing import Optional

from compress_pdfs.compression_potential import MethodMeasurement
from compress_pdfs.document import STRUCTURAL_METHOD_ORDER
from compress_pdfs.errors import JobCancelled
from compress_pdfs.incremental import CompressionBudget, create_budget, process_images_incrementally
from compress_pdfs.method_categories import ALL_METHODS

# Save-time methods, applied cumulatively in this order on the final save
SAVE_OPTION_METHODS = (
    ('remove_orphan_objects', {'garbage': 2}),
    ('remove_duplicate_resources', {'garbage': 4}),
    ('compress_content_streams', {'deflate': True, 'clean': True}),
    ('use_object_streams', {'use_object_streams': True}),
)


@dataclass
class PassResult:
    data: bytes
    size: int
    original_size: int
    baseline_size: int
    page_count: int
    measurements: list
    settings: object
    image_settings: object
    budget: Optional[CompressionBudget] = None
    image_stats: dict = field(default_factory=dict)
    pdf_features: dict = field(default_factory=dict)


def _check_cancelled(cancellation_checker):
    if cancellation_checker and cancellation_checker():
        raise JobCancelled('Compression job was cancelled')


def _unlimited_budget(original_size, baseline_size, total_image_size, total_images):
    # No target: the image budget can never be exceeded, so nothing escalates
    budget = create_budget(original_size, original_size, baseline_size, total_image_size, total_images)
    budget.image_budget_bytes = max(total_image_size, original_size) * 2
    return budget


def run_compression_pass(data, settings, document_service, codec, target_bytes=None,
                         progress_callback=None, cancellation_checker=None):
    """
    Compress a PDF once with the given settings.

    Args:
        data: original PDF bytes (not modified)
        settings: SettingsVector for this pass
        document_service: DocumentService (or compatible fake)
        codec: ImageCodec (or compatible fake)
        target_bytes: byte target driving the image budget, or None
        progress_callback: optional callable(stage, message, percent)
        cancellation_checker: optional callable returning True once cancelled

    Returns:
        PassResult

    Raises:
        PdfError: the input can't be loaded
        JobCancelled: cancellation was observed
    """
    original_size = len(data)
    savings = {method: 0 for method in ALL_METHODS}

    _check_cancelled(cancellation_checker)
    if progress_callback:
        progress_callback('loading', 'Loading PDF...', None)

    doc = document_service.load(data)
    try:
        page_count = document_service.page_count(doc)
        baseline_size = len(document_service.save(doc))
        logging.info(f"Loaded PDF: {page_count} pages, {original_size} bytes (baseline {baseline_size})")

        try:
            analysis = document_service.analyze(doc, settings.target_dpi)
        except Exception as e:
            logging.warning(f"Feature detection failed: {e}")
            analysis = {}

        # Images
        jpeg_items, png_items = document_service.extract_images(doc, include_png=settings.enabled('png_to_jpeg'))
        total_image_size = sum(item.original_size for item in jpeg_items + png_items)
        total_images = len(jpeg_items) + len(png_items)

        if target_bytes is not None:
            budget = create_budget(original_size, target_bytes, baseline_size, total_image_size, total_images)
        else:
            budget = _unlimited_budget(original_size, baseline_size, total_image_size, total_images)

        incremental = process_images_incrementally(
            jpeg_items, png_items, settings, budget, codec,
            progress_callback=progress_callback,
            cancellation_checker=cancellation_checker,
        )

        replaced = 0
        for result in incremental.results:
            try:
                if document_service.replace_image(doc, result.ref, result.data):
                    replaced += 1
            except Exception as e:
                logging.warning(f"Failed to replace image {result.ref}: {e}")
        logging.info(f"Replaced {replaced}/{len(incremental.results)} images")

        if settings.enabled('recompress_images'):
            savings['recompress_images'] = incremental.jpeg_savings - incremental.downsample_savings
        if settings.enabled('downsample_images'):
            savings['downsample_images'] = incremental.downsample_savings
        savings['png_to_jpeg'] = incremental.png_savings

        # Structural methods, each measured on its own
        _check_cancelled(cancellation_checker)
        if progress_callback:
            progress_callback('structure', 'Applying structural optimizations...', None)

        current_size = document_service.size(doc)
        for method in STRUCTURAL_METHOD_ORDER:
            if not settings.enabled(method):
                continue
            try:
                if not document_service.apply_method(doc, method):
                    continue
            except Exception as e:
                logging.warning(f"Method '{method}' failed: {e}")
                continue
            new_size = document_service.size(doc)
            savings[method] = current_size - new_size
            current_size = new_size
            logging.debug(f"{method}: {savings[method]} bytes")

        # Final save
        _check_cancelled(cancellation_checker)
        if progress_callback:
            progress_callback('saving', 'Saving compressed PDF...', None)

        if settings.enabled('strip_metadata'):
            try:
                if document_service.strip_metadata(doc):
                    new_size = document_service.size(doc)
                    savings['strip_metadata'] = current_size - new_size
                    current_size = new_size
            except Exception as e:
                logging.warning(f"Method 'strip_metadata' failed: {e}")

        save_options = {}
        output = None
        for method, options in SAVE_OPTION_METHODS:
            if not settings.enabled(method):
                continue
            save_options.update(options)
            output = document_service.save(doc, **save_options)
            savings[method] = current_size - len(output)
            current_size = len(output)
        if output is None:
            output = document_service.save(doc)
    finally:
        document_service.close(doc)

    measurements = []
    for method in ALL_METHODS:
        measurements.append(MethodMeasurement(
            method=method,
            saved_bytes=savings[method],
            resulting_size=max(0, original_size - savings[method]),
        ))

    logging.info(
        f"Pass complete: {original_size} -> {len(output)} bytes "
        f"(quality {incremental.settings_used.quality}, {settings.enabled_method_count()} methods)"
    )

    return PassResult(
        data=output,
        size=len(output),
        original_size=original_size,
        baseline_size=baseline_size,
        page_count=page_count,
        measurements=measurements,
        settings=settings,
        image_settings=incremental.settings_used,
        budget=incremental.budget if target_bytes is not None else None,
        image_stats={
            **analysis.get('image_stats', {}),
            'processed_jpeg_count': len(jpeg_items),
            'processed_png_count': len(png_items),
            'replaced': replaced,
            'jpeg_savings': incremental.jpeg_savings,
            'downsample_savings': incremental.downsample_savings,
            'png_savings': incremental.png_savings,
            'escalations': incremental.escalations,
        },
        pdf_features=analysis.get('pdf_features', {}),
    )
