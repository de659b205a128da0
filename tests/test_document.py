#!/usr/bin/env python3
"""
Tests for the PyMuPDF document service, on small PDFs built in memory
"""

import sys
import os
import io
sys.path.append(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import fitz  # PyMuPDF
import pytest
from PIL import Image

from compress_pdfs import document
from compress_pdfs.document import STRUCTURAL_METHOD_ORDER, DocumentService
from compress_pdfs.errors import CORRUPTED_PDF, ENCRYPTED_PDF, FILE_TOO_LARGE, INVALID_FILE_TYPE, PdfError
from compress_pdfs.method_categories import ALL_METHODS


def image_bytes(fmt, size=(200, 150), **kwargs):
    bands = [Image.effect_noise(size, 40) for _ in range(3)]
    buffer = io.BytesIO()
    Image.merge('RGB', bands).save(buffer, format=fmt, **kwargs)
    return buffer.getvalue()


def mask_bytes(size=(200, 150)):
    buffer = io.BytesIO()
    Image.linear_gradient('L').resize(size).save(buffer, format='PNG')
    return buffer.getvalue()


def build_pdf(pages=2, jpeg=None, png=None, mask=None, **save_options):
    doc = fitz.open()
    jpeg_xref = 0
    for _ in range(pages):
        page = doc.new_page()
        page.insert_text((72, 72), 'Hello compression')
        if jpeg and not jpeg_xref:
            jpeg_xref = page.insert_image(fitz.Rect(72, 100, 272, 250), stream=jpeg, mask=mask)
        elif jpeg:
            # same image object shown on every page
            page.insert_image(fitz.Rect(72, 100, 272, 250), xref=jpeg_xref)
    if png:
        doc[0].insert_image(fitz.Rect(72, 300, 272, 450), stream=png)
    data = doc.tobytes(**save_options)
    doc.close()
    return data


@pytest.fixture
def service():
    return DocumentService()


def test_load_and_page_count(service):
    doc = service.load(build_pdf(pages=3))
    assert service.page_count(doc) == 3
    service.close(doc)


def test_rejects_non_pdf(service):
    with pytest.raises(PdfError) as excinfo:
        service.load(b'GIF89a not a pdf at all')
    assert excinfo.value.code == INVALID_FILE_TYPE


def test_rejects_corrupted(service):
    with pytest.raises(PdfError) as excinfo:
        service.load(b'%PDF-1.7\n' + b'\x00garbage' * 50)
    assert excinfo.value.code == CORRUPTED_PDF


def test_rejects_encrypted(service):
    data = build_pdf(encryption=fitz.PDF_ENCRYPT_AES_256, user_pw='secret', owner_pw='owner')
    with pytest.raises(PdfError) as excinfo:
        service.load(data)
    assert excinfo.value.code == ENCRYPTED_PDF


def test_rejects_oversized(service, monkeypatch):
    monkeypatch.setattr(document, 'MAX_FILE_SIZE_BYTES', 100)
    with pytest.raises(PdfError) as excinfo:
        service.load(build_pdf())
    assert excinfo.value.code == FILE_TOO_LARGE


def test_extract_images_deduplicates_and_splits(service):
    jpeg = image_bytes('JPEG', quality=90)
    doc = service.load(build_pdf(pages=2, jpeg=jpeg, png=image_bytes('PNG')))

    jpeg_items, png_items = service.extract_images(doc)
    assert len(jpeg_items) == 1
    assert jpeg_items[0].format == 'jpeg'
    assert jpeg_items[0].original_size == len(jpeg_items[0].data)
    assert (jpeg_items[0].width, jpeg_items[0].height) == (200, 150)
    assert len(png_items) == 1

    _, without_png = service.extract_images(doc, include_png=False)
    assert without_png == []
    service.close(doc)


def image_xrefs(doc):
    return [xref for xref in range(1, doc.xref_length()) if doc.xref_is_image(xref)]


def test_replace_image_rewrites_stream_in_place(service):
    doc = service.load(build_pdf(pages=2, jpeg=image_bytes('JPEG', quality=95)))
    item = service.extract_images(doc)[0][0]
    assert not item.has_transparency
    smaller = image_bytes('JPEG', quality=20)

    assert service.replace_image(doc, item.ref, smaller)
    new_items = service.extract_images(doc)[0]
    assert [new.ref for new in new_items] == [item.ref]
    assert new_items[0].original_size < item.original_size
    assert image_xrefs(doc) == [item.ref]
    assert all(page.get_images()[0][0] == item.ref for page in doc)

    # no leftover copy in the serialized file either
    reopened = service.load(service.save(doc))
    assert len(image_xrefs(reopened)) == 1
    service.close(reopened)

    assert not service.replace_image(doc, 999999, smaller)
    service.close(doc)


def test_replace_image_keeps_soft_mask(service):
    doc = service.load(build_pdf(pages=1, jpeg=image_bytes('JPEG', quality=95), mask=mask_bytes()))
    item = service.extract_images(doc)[0][0]
    assert item.has_transparency
    smask = doc.xref_get_key(item.ref, 'SMask')
    assert smask[0] == 'xref'

    assert service.replace_image(doc, item.ref, image_bytes('JPEG', quality=20))
    assert doc.xref_get_key(item.ref, 'SMask') == smask
    assert doc.xref_get_key(item.ref, 'Filter') == ('name', '/DCTDecode')
    assert len(image_xrefs(doc)) == 2  # the image and its mask
    service.close(doc)


def test_replace_image_updates_dictionary(service):
    doc = service.load(build_pdf(pages=1, jpeg=image_bytes('JPEG', quality=95)))
    ref = service.extract_images(doc)[0][0].ref
    buffer = io.BytesIO()
    Image.effect_noise((100, 75), 40).save(buffer, format='JPEG', quality=30)

    assert service.replace_image(doc, ref, buffer.getvalue())
    assert doc.xref_get_key(ref, 'Width') == ('int', '100')
    assert doc.xref_get_key(ref, 'Height') == ('int', '75')
    assert doc.xref_get_key(ref, 'ColorSpace') == ('name', '/DeviceGray')
    service.close(doc)


def test_analyze_features_and_image_stats(service):
    data = build_pdf(pages=2, jpeg=image_bytes('JPEG', quality=90), png=image_bytes('PNG'), mask=mask_bytes())
    doc = service.load(data)
    doc.set_toc([[1, 'Intro', 1]])
    doc.embfile_add('notes.txt', b'attached')
    doc[1].add_text_annot((100, 100), 'review me')

    analysis = service.analyze(doc, target_dpi=150)
    stats = analysis['image_stats']
    assert stats['total_images'] == 2
    assert stats['jpeg_count'] == 1
    assert stats['png_count'] == 1
    assert stats['alpha_count'] == 1
    assert stats['cmyk_count'] == 0
    assert stats['avg_dpi'] == 18  # 200px over an 11" page

    features = analysis['pdf_features']
    assert features['has_images']
    assert features['has_alpha_images']
    assert features['has_bookmarks']
    assert features['has_attachments']
    assert features['has_annotations']
    assert not features['has_forms']
    assert not features['has_javascript']
    assert not features['has_high_dpi_images']
    service.close(doc)


def test_analyze_document_without_images(service):
    doc = service.load(build_pdf())
    analysis = service.analyze(doc)
    assert analysis['image_stats']['total_images'] == 0
    assert analysis['image_stats']['avg_dpi'] == 0
    assert not analysis['pdf_features']['has_images']
    service.close(doc)


def test_save_options_produce_valid_pdf(service):
    doc = service.load(build_pdf(pages=3))
    plain = service.save(doc)
    packed = service.save(doc, use_object_streams=True, garbage=4, deflate=True, clean=True)
    service.close(doc)

    assert len(packed) <= len(plain)
    reopened = service.load(packed)
    assert service.page_count(reopened) == 3
    service.close(reopened)


def test_structural_order_only_lists_known_methods():
    assert set(STRUCTURAL_METHOD_ORDER) <= set(ALL_METHODS)
    assert len(set(STRUCTURAL_METHOD_ORDER)) == len(STRUCTURAL_METHOD_ORDER)


def test_remove_bookmarks(service):
    doc = service.load(build_pdf())
    doc.set_toc([[1, 'Intro', 1], [1, 'End', 2]])

    assert service.apply_method(doc, 'remove_bookmarks')
    assert doc.get_toc() == []
    assert not service.apply_method(doc, 'remove_bookmarks')
    service.close(doc)


def test_remove_page_labels(service):
    doc = service.load(build_pdf())
    doc.set_page_labels([{'startpage': 0, 'prefix': 'A-', 'style': 'D', 'firstpagenum': 1}])

    assert service.apply_method(doc, 'remove_page_labels')
    assert not service.apply_method(doc, 'remove_page_labels')
    service.close(doc)


def test_remove_attachments(service):
    doc = service.load(build_pdf())
    doc.embfile_add('notes.txt', b'attached bytes' * 100)

    assert service.apply_method(doc, 'remove_attachments')
    assert doc.embfile_count() == 0
    service.close(doc)


def test_flatten_annotations(service):
    doc = service.load(build_pdf(pages=1))
    doc[0].add_text_annot((100, 100), 'review me')

    assert service.apply_method(doc, 'flatten_annotations')
    assert doc[0].first_annot is None
    assert not service.apply_method(doc, 'flatten_annotations')
    service.close(doc)


def test_metadata_methods(service):
    doc = service.load(build_pdf())
    doc.set_metadata({'title': 'Quarterly report', 'author': 'Someone'})
    doc.set_xml_metadata('<x:xmpmeta xmlns:x="adobe:ns:meta/"></x:xmpmeta>')

    assert service.apply_method(doc, 'deep_clean_metadata')
    assert not doc.xref_xml_metadata()
    assert service.strip_metadata(doc)
    assert not doc.metadata.get('title')
    assert not service.strip_metadata(doc)
    service.close(doc)


def test_unsupported_and_inapplicable_methods(service):
    doc = service.load(build_pdf())
    assert not service.apply_method(doc, 'reduce_vector_precision')
    assert not service.apply_method(doc, 'remove_thumbnails')
    assert not service.apply_method(doc, 'remove_article_threads')
    assert not service.apply_method(doc, 'remove_javascript')
    service.close(doc)
