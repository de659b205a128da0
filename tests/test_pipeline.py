#!/usr/bin/env python3
"""
Tests for a single compression pass. Most use in-memory fakes for the
document and codec services; the last ones run PyMuPDF and Pillow for real.
"""

import sys
import os
import io
sys.path.append(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import fitz  # PyMuPDF
import pytest
from PIL import Image

from compress_pdfs.codec import ImageCodec, ImageItem, ImageResult
from compress_pdfs.document import DocumentService
from compress_pdfs.errors import CORRUPTED_PDF, JobCancelled, PdfError, create_pdf_error
from compress_pdfs.method_categories import ALL_METHODS
from compress_pdfs.pipeline import run_compression_pass
from compress_pdfs.settings import SettingsVector, default_settings, preset_settings


class FakeDocument:
    def __init__(self, images, structure):
        self.images = dict(images)
        self.structure = dict(structure)
        self.metadata = 300
        self.closed = False

    def size(self):
        return 1000 + sum(self.images.values()) + sum(self.structure.values()) + self.metadata


class FakeDocumentService:
    """Document whose size is a fixed overhead plus image and structure bytes"""

    def __init__(self, images=None, structure=None, failing=()):
        self.images = images or {}
        self.structure = structure or {}
        self.failing = set(failing)
        self.applied = []
        self.docs = []

    def load(self, data):
        if data == b'broken':
            raise create_pdf_error(CORRUPTED_PDF)
        doc = FakeDocument(self.images, self.structure)
        self.docs.append(doc)
        return doc

    def close(self, doc):
        doc.closed = True

    def page_count(self, doc):
        return 3

    def save(self, doc, use_object_streams=False, garbage=0, deflate=False, clean=False):
        size = doc.size()
        if garbage:
            size -= 50 * garbage
        if deflate:
            size -= 100
        if use_object_streams:
            size -= 40
        return b'%' * size

    def size(self, doc):
        return len(self.save(doc))

    def extract_images(self, doc, include_png=True):
        items = [ImageItem(ref=ref, format='jpeg', data=b'', width=100, height=100, original_size=size)
                 for ref, size in sorted(doc.images.items())]
        return items, []

    def replace_image(self, doc, ref, data):
        doc.images[ref] = len(data)
        return True

    def apply_method(self, doc, method):
        self.applied.append(method)
        if method in self.failing:
            raise RuntimeError(f"{method} exploded")
        if method not in doc.structure:
            return False
        doc.structure.pop(method)
        return True

    def strip_metadata(self, doc):
        doc.metadata = 0
        return True

    def analyze(self, doc, target_dpi=150):
        return {
            'pdf_features': {'has_images': bool(doc.images), 'has_metadata': doc.metadata > 0},
            'image_stats': {'total_images': len(doc.images), 'avg_dpi': 9},
        }


class HalvingCodec:
    def recompress(self, item, settings, grayscale=False, monochrome=False):
        new_size = item.original_size // 2
        return ImageResult(ref=item.ref, data=b'j' * new_size, width=100, height=100, new_size=new_size,
                           original_size=item.original_size, saved_bytes=item.original_size - new_size)

    def convert_png(self, item, quality):
        return None


def savings_by_method(result):
    return {m.method: m.saved_bytes for m in result.measurements}


def test_measurement_for_every_method():
    service = FakeDocumentService(images={1: 4000, 2: 2000}, structure={'remove_thumbnails': 700})
    result = run_compression_pass(b'%PDF-1.7' + b'0' * 9000, default_settings(), service, HalvingCodec())

    assert [m.method for m in result.measurements] == list(ALL_METHODS)
    savings = savings_by_method(result)
    assert savings['recompress_images'] == 3000
    assert savings['remove_thumbnails'] == 700
    assert savings['strip_metadata'] == 300
    assert savings['remove_orphan_objects'] == 100
    assert savings['remove_duplicate_resources'] == 100
    assert savings['compress_content_streams'] == 100
    assert savings['use_object_streams'] == 40
    assert savings['convert_to_grayscale'] == 0


def test_output_and_sizes():
    service = FakeDocumentService(images={1: 4000}, structure={'remove_thumbnails': 700})
    result = run_compression_pass(b'%PDF' + b'0' * 7000, default_settings(), service, HalvingCodec())

    # 1000 overhead + 2000 image, every save option on
    assert result.size == 3000 - 200 - 100 - 40
    assert len(result.data) == result.size
    assert result.baseline_size == 1000 + 4000 + 700 + 300
    assert result.page_count == 3
    assert result.budget is None
    assert result.image_stats['replaced'] == 1
    assert all(doc.closed for doc in service.docs)


def test_disabled_methods_not_applied():
    settings = default_settings()
    settings.methods['remove_thumbnails'] = False
    settings.methods['use_object_streams'] = False
    service = FakeDocumentService(structure={'remove_thumbnails': 700})
    result = run_compression_pass(b'%PDF', settings, service, HalvingCodec())

    assert 'remove_thumbnails' not in service.applied
    savings = savings_by_method(result)
    assert savings['remove_thumbnails'] == 0
    assert savings['use_object_streams'] == 0


def test_failing_method_is_absorbed():
    settings = default_settings().with_methods(['flatten_forms'])
    service = FakeDocumentService(structure={'remove_thumbnails': 700}, failing={'flatten_forms'})
    result = run_compression_pass(b'%PDF', settings, service, HalvingCodec())

    assert 'flatten_forms' in service.applied
    savings = savings_by_method(result)
    assert savings['flatten_forms'] == 0
    assert savings['remove_thumbnails'] == 700


def test_target_builds_budget():
    service = FakeDocumentService(images={1: 40000, 2: 40000})
    result = run_compression_pass(b'%PDF' + b'0' * 99996, default_settings(), service, HalvingCodec(),
                                  target_bytes=50000)
    assert result.budget is not None
    assert result.budget.target_bytes == 50000
    assert result.budget.images_processed == 2


def test_load_errors_propagate():
    with pytest.raises(PdfError) as excinfo:
        run_compression_pass(b'broken', default_settings(), FakeDocumentService(), HalvingCodec())
    assert excinfo.value.code == CORRUPTED_PDF


def test_cancelled_before_start():
    service = FakeDocumentService()
    with pytest.raises(JobCancelled):
        run_compression_pass(b'%PDF', SettingsVector(), service, HalvingCodec(),
                             cancellation_checker=lambda: True)
    assert service.docs == []


def test_document_closed_when_cancelled_midway():
    calls = []

    def checker():
        calls.append(1)
        return len(calls) > 2

    service = FakeDocumentService(images={1: 4000, 2: 2000, 3: 1000})
    with pytest.raises(JobCancelled):
        run_compression_pass(b'%PDF', default_settings(), service, HalvingCodec(), cancellation_checker=checker)
    assert service.docs[0].closed


def test_features_and_image_stats_reported():
    service = FakeDocumentService(images={1: 4000, 2: 2000})
    result = run_compression_pass(b'%PDF', default_settings(), service, HalvingCodec())

    assert result.pdf_features == {'has_images': True, 'has_metadata': True}
    assert result.image_stats['total_images'] == 2
    assert result.image_stats['avg_dpi'] == 9
    assert result.image_stats['processed_jpeg_count'] == 2
    assert result.image_stats['jpeg_savings'] == 3000


def test_failed_feature_detection_is_absorbed(monkeypatch):
    service = FakeDocumentService(images={1: 4000})

    def broken(doc, target_dpi=150):
        raise RuntimeError('no catalog')

    monkeypatch.setattr(service, 'analyze', broken)
    result = run_compression_pass(b'%PDF', default_settings(), service, HalvingCodec())
    assert result.pdf_features == {}
    assert result.image_stats['replaced'] == 1


def real_pdf(mask=True):
    """Two pages sharing one high-quality JPEG, optionally with a soft mask"""
    size = (400, 300)
    buffer = io.BytesIO()
    Image.merge('RGB', [Image.effect_noise(size, 40) for _ in range(3)]).save(buffer, format='JPEG', quality=95)
    jpeg = buffer.getvalue()
    buffer = io.BytesIO()
    Image.linear_gradient('L').resize(size).save(buffer, format='PNG')
    soft_mask = buffer.getvalue() if mask else None

    doc = fitz.open()
    xref = 0
    for _ in range(2):
        page = doc.new_page()
        if xref:
            page.insert_image(fitz.Rect(72, 72, 472, 372), xref=xref)
        else:
            xref = page.insert_image(fitz.Rect(72, 72, 472, 372), stream=jpeg, mask=soft_mask)
    data = doc.tobytes()
    doc.close()
    return data


def minimal_without_garbage_collection():
    settings = preset_settings('minimal')
    settings.methods['remove_orphan_objects'] = False
    settings.methods['remove_duplicate_resources'] = False
    return settings


def test_real_pass_shrinks_and_keeps_one_copy_of_each_image():
    data = real_pdf()
    result = run_compression_pass(data, minimal_without_garbage_collection(), DocumentService(), ImageCodec())

    assert result.image_stats['replaced'] == 1
    assert result.size < len(data)
    assert savings_by_method(result)['recompress_images'] > 0

    out = fitz.open(stream=result.data, filetype='pdf')
    shown = {info[0] for page in out for info in page.get_images(full=True)}
    assert len(shown) == 1
    xref = shown.pop()
    # the JPEG and its soft mask, nothing else
    assert sum(out.xref_is_image(x) for x in range(1, out.xref_length())) == 2
    assert out.xref_get_key(xref, 'SMask')[0] == 'xref'
    out.close()


def test_real_pass_reports_features():
    result = run_compression_pass(real_pdf(mask=False), default_settings(), DocumentService(), ImageCodec())
    assert result.pdf_features['has_jpeg_images']
    assert not result.pdf_features['has_alpha_images']
    assert result.image_stats['total_images'] == 1
    assert result.image_stats['jpeg_count'] == 1
