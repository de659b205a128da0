#!/usr/bin/env python3
"""
Target-size PDF compression

Runs a first pass with settings mapped from the target percentage. If the
result is still larger than the target, the whole pass is re-run from the
original bytes with each escalation tier in turn, keeping the smallest output
seen. Missing the target after the last tier is reported as a warning, the
smallest result is still returned.
"""

import logging
import os
import sys
from dataclasses import dataclass, field

from compress_pdfs.codec import ImageCodec
from compress_pdfs.document import DocumentService
from compress_pdfs.errors import COLLABORATOR_UNAVAILABLE, JobCancelled, PdfError, create_pdf_error
from compress_pdfs.pipeline import run_compression_pass
from compress_pdfs.settings import default_settings, preset_settings
from compress_pdfs.target_size import (
    MAX_ESCALATION_TIERS,
    clamp_target_percent,
    escalation_tier,
    settings_for_target_percent,
    target_bytes_for_percent,
)

# Usage: python -m compress_pdfs.compress input.pdf output.pdf [--target-percent 50]


@dataclass
class JobResult:
    data: bytes
    original_size: int
    achieved_size: int
    target_bytes: int = None
    measurements: list = field(default_factory=list)
    settings_trail: list = field(default_factory=list)
    warnings: list = field(default_factory=list)
    target_met: bool = True
    image_stats: dict = field(default_factory=dict)
    pdf_features: dict = field(default_factory=dict)

    def to_dict(self):
        """JSON-friendly summary (without the PDF bytes)"""
        return {
            'original_size': self.original_size,
            'achieved_size': self.achieved_size,
            'target_bytes': self.target_bytes,
            'target_met': self.target_met,
            'measurements': [m.to_dict() for m in self.measurements],
            'settings_trail': self.settings_trail,
            'warnings': self.warnings,
            'image_stats': self.image_stats,
            'pdf_features': self.pdf_features,
        }


def _trail_entry(tier, settings, size):
    return {
        'tier': tier,
        'quality': settings.quality,
        'target_dpi': settings.target_dpi,
        'enabled_methods': settings.enabled_method_count(),
        'size': size,
    }


def _create_services(document_service, codec):
    try:
        if document_service is None:
            document_service = DocumentService()
        if codec is None:
            codec = ImageCodec()
    except Exception as e:
        raise create_pdf_error(COLLABORATOR_UNAVAILABLE, str(e))
    return document_service, codec


def compress_to_target(data, target_percent=None, settings=None, progress_callback=None,
                       cancellation_checker=None, document_service=None, codec=None):
    """
    Compress PDF bytes, escalating until the target size is met or the
    ladder is exhausted.

    Args:
        data: original PDF bytes
        target_percent: desired size as % of the original (10-100), or None
        settings: SettingsVector used when no target is given
        progress_callback: optional callable(stage, message, percent)
        cancellation_checker: optional callable returning True once cancelled
        document_service: document-model service, defaults to DocumentService
        codec: image codec service, defaults to ImageCodec

    Returns:
        JobResult

    Raises:
        PdfError: invalid input or unavailable services
        JobCancelled: the job was cancelled or superseded
    """
    document_service, codec = _create_services(document_service, codec)
    original_size = len(data)

    target_bytes = None
    if target_percent is not None:
        target_percent = clamp_target_percent(target_percent)
        target_bytes = target_bytes_for_percent(original_size, target_percent)
        initial = settings_for_target_percent(target_percent)
        logging.info(f"Target: {target_percent}% of {original_size} bytes = {target_bytes} bytes")
    else:
        initial = settings.copy() if settings is not None else default_settings()

    def check_cancelled():
        if cancellation_checker and cancellation_checker():
            raise JobCancelled('Compression job was cancelled')

    def run_pass(tier, pass_settings):
        check_cancelled()
        if progress_callback:
            label = 'Compressing' if tier == 0 else f"Escalating (tier {tier}/{MAX_ESCALATION_TIERS})"
            progress_callback('pass', f"{label}...", None)
        result = run_compression_pass(
            data, pass_settings, document_service, codec,
            target_bytes=target_bytes,
            progress_callback=progress_callback,
            cancellation_checker=cancellation_checker,
        )
        settings_trail.append(_trail_entry(tier, pass_settings, result.size))
        return result

    settings_trail = []
    warnings = []

    best = run_pass(0, initial)

    if target_bytes is not None and best.size > target_bytes:
        for tier in range(1, MAX_ESCALATION_TIERS + 1):
            logging.info(
                f"Result {best.size} bytes exceeds target {target_bytes} bytes, escalating to tier {tier}"
            )
            result = run_pass(tier, escalation_tier(tier, initial))
            # strictly smaller, so ties keep the earlier result
            if result.size < best.size:
                best = result
            if best.size <= target_bytes:
                logging.info(f"Target reached at tier {tier}: {best.size} bytes")
                break

    target_met = target_bytes is None or best.size <= target_bytes
    if not target_met:
        message = (
            f"Target not reached after {MAX_ESCALATION_TIERS} escalation tiers: "
            f"best result is {best.size} bytes ({best.size / original_size * 100:.1f}% of original), "
            f"target was {target_bytes} bytes"
        )
        logging.warning(message)
        warnings.append(message)

    return JobResult(
        data=best.data,
        original_size=original_size,
        achieved_size=best.size,
        target_bytes=target_bytes,
        measurements=best.measurements,
        settings_trail=settings_trail,
        warnings=warnings,
        target_met=target_met,
        image_stats=best.image_stats,
        pdf_features=best.pdf_features,
    )


def compress_pdf(input_path, output_path, target_percent=None, preset=None):
    if not os.path.exists(input_path):
        logging.error(f"Error: Input file '{input_path}' does not exist.")
        return False
    try:
        logging.info(f"Compressing '{input_path}'...")
        with open(input_path, 'rb') as f:
            data = f.read()

        settings = preset_settings(preset) if preset else None
        result = compress_to_target(data, target_percent=target_percent, settings=settings)

        with open(output_path, 'wb') as f:
            f.write(result.data)

        reduction = (1 - result.achieved_size / result.original_size) * 100 if result.original_size else 0
        logging.info(
            f"Compressed PDF saved to '{output_path}' "
            f"({result.original_size} -> {result.achieved_size} bytes, {reduction:.1f}% smaller)"
        )
        for warning in result.warnings:
            logging.warning(warning)
        return True
    except PdfError as e:
        logging.error(f"Error compressing PDF: {e.user_message} ({e})")
        return False
    except Exception as e:
        logging.error(f"Error compressing PDF: {e}")
        return False


def main():
    import argparse

    parser = argparse.ArgumentParser(description='Compress a PDF to a target size')
    parser.add_argument('input_pdf', help='Path to the input PDF file')
    parser.add_argument('output_pdf', help='Path to save the compressed PDF file')
    parser.add_argument('--target-percent', type=int,
                        help='Target size as a percentage of the original (10-100)')
    parser.add_argument('--preset', choices=['aggressive', 'balanced', 'minimal'],
                        help='Use a preset instead of a target size')
    parser.add_argument('--verbose', '-v', action='store_true',
                        help='Enable verbose logging')

    args = parser.parse_args()

    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.INFO,
                        format='%(asctime)s - %(levelname)s - %(message)s')

    output_dir = os.path.dirname(os.path.abspath(args.output_pdf))
    if not os.path.exists(output_dir):
        logging.error(f"Output directory '{output_dir}' does not exist")
        sys.exit(1)

    success = compress_pdf(args.input_pdf, args.output_pdf, args.target_percent, args.preset)
    sys.exit(0 if success else 1)


if __name__ == "__main__":
    main()
