"""
PyMuPDF document-model service.

Loads and validates PDF bytes, extracts embedded images for the codec, writes
recompressed images back, applies structural cleanup methods and serializes
the document with the save options that correspond to the enabled methods.
"""

import io
import logging
import os

import fitz  # PyMuPDF
from PIL import Image

from compress_pdfs.codec import ImageItem, estimate_image_dpi, should_downsample
from compress_pdfs.errors import (
    CORRUPTED_PDF,
    ENCRYPTED_PDF,
    FILE_TOO_LARGE,
    INVALID_FILE_TYPE,
    create_pdf_error,
)
from compress_pdfs.settings import DEFAULT_TARGET_DPI, round_half_up

MAX_FILE_SIZE_MB = int(os.getenv('PDF_MAX_SIZE_MB', '100'))
MAX_FILE_SIZE_BYTES = MAX_FILE_SIZE_MB * 1024 * 1024
PDF_MAGIC = b'%PDF'
# Some producers write junk before the header; readers accept it within 1 KB
MAGIC_SEARCH_WINDOW = 1024

# Applied one at a time and measured between saves
STRUCTURAL_METHOD_ORDER = (
    'remove_javascript',
    'remove_thumbnails',
    'remove_attachments',
    'remove_bookmarks',
    'remove_named_destinations',
    'remove_page_labels',
    'remove_article_threads',
    'remove_web_capture_info',
    'remove_alternate_content',
    'remove_color_profiles',
    'remove_alpha_channels',
    'remove_hidden_layers',
    'remove_unused_fonts',
    'inline_to_xobject',
    'deduplicate_shadings',
    'remove_unused_shadings',
    'reduce_vector_precision',
    'flatten_forms',
    'flatten_annotations',
    'remove_invisible_text',
    'deep_clean_metadata',
)

# Catalog entries dropped by the simple "remove a feature" methods
_CATALOG_KEYS = {
    'remove_named_destinations': ('Dests', 'Names/Dests'),
    'remove_page_labels': ('PageLabels',),
    'remove_article_threads': ('Threads',),
    'remove_web_capture_info': ('SpiderInfo',),
    'remove_color_profiles': ('OutputIntents',),
}

_INFO_KEYS = ('title', 'author', 'subject', 'keywords', 'creator', 'producer', 'creationDate', 'modDate')

_SCRUB_FLAGS = (
    'attached_files', 'clean_pages', 'embedded_files', 'hidden_text', 'javascript',
    'metadata', 'redactions', 'remove_links', 'reset_fields', 'reset_responses',
    'thumbnails', 'xml_metadata',
)


def validate_pdf_bytes(data):
    """Raise a PdfError if data is too large or doesn't look like a PDF"""
    if len(data) > MAX_FILE_SIZE_BYTES:
        raise create_pdf_error(FILE_TOO_LARGE, f"{len(data)} bytes (limit {MAX_FILE_SIZE_MB} MB)")
    if PDF_MAGIC not in data[:MAGIC_SEARCH_WINDOW]:
        raise create_pdf_error(INVALID_FILE_TYPE, 'missing %PDF header')


def _image_format(ext):
    ext = (ext or '').lower()
    if ext in ('jpeg', 'jpg'):
        return 'jpeg'
    if ext == 'png':
        return 'png'
    return 'other'


def _has_key(doc, xref, key):
    return doc.xref_get_key(xref, key)[0] != 'null'


# JPEG modes the codec writes, with their PDF color space
_DEVICE_SPACES = {
    'L': ('/DeviceGray', 1),
    'RGB': ('/DeviceRGB', 3),
    'CMYK': ('/DeviceCMYK', 4),
}
_DEVICE_COMPONENTS = {name: components for name, components in _DEVICE_SPACES.values()}


def _colorspace_components(doc, xref):
    """Component count of an image's color space, or None if it isn't a device or ICC space"""
    kind, value = doc.xref_get_key(xref, 'ColorSpace')
    if kind == 'name':
        return _DEVICE_COMPONENTS.get(value)
    if kind == 'array' and value.startswith('[/ICCBased'):
        # '[/ICCBased 12 0 R]'
        profile = int(value.strip('[]').split()[1])
        kind, components = doc.xref_get_key(profile, 'N')
        if kind == 'int':
            return int(components)
    return None


def _has_transparency(doc, xref):
    return _has_key(doc, xref, 'SMask') or _has_key(doc, xref, 'Mask')


def _unique_images(doc):
    """Yield the get_images() tuple of each image object once, in page order"""
    seen = set()
    for page in doc:
        for image_info in page.get_images(full=True):
            if image_info[0] in seen:
                continue
            seen.add(image_info[0])
            yield image_info


class DocumentService:
    """Wraps the fitz calls the compression pipeline needs"""

    def load(self, data):
        validate_pdf_bytes(data)
        try:
            doc = fitz.open(stream=data, filetype='pdf')
        except Exception as e:
            raise create_pdf_error(CORRUPTED_PDF, str(e))

        if doc.needs_pass:
            doc.close()
            raise create_pdf_error(ENCRYPTED_PDF)
        if doc.page_count == 0:
            doc.close()
            raise create_pdf_error(CORRUPTED_PDF, 'document has no pages')
        return doc

    def close(self, doc):
        doc.close()

    def page_count(self, doc):
        return doc.page_count

    def save(self, doc, use_object_streams=False, garbage=0, deflate=False, clean=False):
        """Serialize the document to bytes without touching the input"""
        return doc.tobytes(
            garbage=garbage,
            deflate=deflate,
            clean=clean,
            use_objstms=1 if use_object_streams else 0,
        )

    def size(self, doc):
        return len(self.save(doc))

    def extract_images(self, doc, include_png=True):
        """
        Collect each embedded image once, split by re-encodable format.

        Returns:
            (jpeg_items, png_items): lists of ImageItem
        """
        jpeg_items = []
        png_items = []
        found = 0

        for image_info in _unique_images(doc):
            xref = image_info[0]
            found += 1
            try:
                base = doc.extract_image(xref)
            except Exception as e:
                logging.warning(f"Could not extract image {xref}: {e}")
                continue
            if not base or not base.get('image'):
                continue

            item = ImageItem(
                ref=xref,
                format=_image_format(base.get('ext')),
                data=base['image'],
                width=base.get('width', 0),
                height=base.get('height', 0),
                original_size=len(base['image']),
                has_transparency=_has_transparency(doc, xref),
            )
            if item.format == 'jpeg':
                jpeg_items.append(item)
            elif item.format == 'png' and include_png:
                png_items.append(item)

        logging.info(f"Found {found} unique images ({len(jpeg_items)} JPEG, {len(png_items)} PNG)")
        return jpeg_items, png_items

    def replace_image(self, doc, ref, data):
        """
        Rewrite an image object's stream in place with JPEG data.

        The object keeps its xref, so every page showing it still does and any
        SMask or Mask stays attached. The color space is only rewritten when
        the new data has a different number of components.
        """
        if not 0 < ref < doc.xref_length() or not doc.xref_is_image(ref):
            return False

        with Image.open(io.BytesIO(data)) as image:
            width, height = image.size
            colorspace, components = _DEVICE_SPACES.get(image.mode, _DEVICE_SPACES['RGB'])

        # compress=0 keeps the JPEG bytes as they are, no Flate wrapper
        doc.update_stream(ref, data, compress=0)
        doc.xref_set_key(ref, 'Filter', '/DCTDecode')
        doc.xref_set_key(ref, 'DecodeParms', 'null')
        doc.xref_set_key(ref, 'Width', str(width))
        doc.xref_set_key(ref, 'Height', str(height))
        doc.xref_set_key(ref, 'BitsPerComponent', '8')
        if _colorspace_components(doc, ref) != components:
            doc.xref_set_key(ref, 'ColorSpace', colorspace)
            doc.xref_set_key(ref, 'Decode', 'null')
        return True

    def analyze(self, doc, target_dpi=DEFAULT_TARGET_DPI):
        """
        Detect which features the document has and count its images.

        Returns:
            dict with 'pdf_features' and 'image_stats'
        """
        stats = {
            'total_images': 0,
            'jpeg_count': 0,
            'png_count': 0,
            'other_count': 0,
            'high_dpi_count': 0,
            'cmyk_count': 0,
            'icc_count': 0,
            'alpha_count': 0,
            'avg_dpi': 0,
        }
        dpi_sum = 0
        for image_info in _unique_images(doc):
            xref, smask, width, height = image_info[:4]
            colorspace, alternate, _, image_filter = image_info[5:9]
            stats['total_images'] += 1

            if image_filter == 'DCTDecode':
                stats['jpeg_count'] += 1
            elif image_filter == 'FlateDecode':
                stats['png_count'] += 1
            else:
                stats['other_count'] += 1

            dpi_sum += estimate_image_dpi(width, height)
            if should_downsample(width, height, target_dpi):
                stats['high_dpi_count'] += 1
            if 'CMYK' in colorspace or 'CMYK' in alternate or _colorspace_components(doc, xref) == 4:
                stats['cmyk_count'] += 1
            if 'ICCBased' in colorspace:
                stats['icc_count'] += 1
            if smask or _has_transparency(doc, xref):
                stats['alpha_count'] += 1

        if stats['total_images']:
            stats['avg_dpi'] = round_half_up(dpi_sum / stats['total_images'])

        catalog = doc.pdf_catalog()
        metadata = doc.metadata or {}
        features = {
            'has_images': stats['total_images'] > 0,
            'has_jpeg_images': stats['jpeg_count'] > 0,
            'has_png_images': stats['png_count'] > 0,
            'has_alpha_images': stats['alpha_count'] > 0,
            'has_icc_profiles': stats['icc_count'] > 0 or _has_key(doc, catalog, 'OutputIntents'),
            'has_cmyk_images': stats['cmyk_count'] > 0,
            'has_high_dpi_images': stats['high_dpi_count'] > 0,
            'has_javascript': self._has_javascript(doc),
            'has_bookmarks': bool(doc.get_toc(simple=True)),
            'has_named_destinations': any(_has_key(doc, catalog, key) for key in ('Dests', 'Names/Dests')),
            'has_article_threads': _has_key(doc, catalog, 'Threads'),
            'has_web_capture_info': _has_key(doc, catalog, 'SpiderInfo'),
            'has_hidden_layers': _has_key(doc, catalog, 'OCProperties'),
            'has_page_labels': _has_key(doc, catalog, 'PageLabels'),
            'has_forms': bool(doc.is_form_pdf),
            'has_annotations': any(page.first_annot for page in doc),
            'has_attachments': doc.embfile_count() > 0,
            'has_thumbnails': any(_has_key(doc, page.xref, 'Thumb') for page in doc),
            'has_metadata': any(metadata.get(key) for key in _INFO_KEYS) or bool(doc.xref_xml_metadata()),
        }
        return {'pdf_features': features, 'image_stats': stats}

    def apply_method(self, doc, method):
        """
        Apply one structural method in place.

        Returns:
            bool: True if the document was changed, False when the method
            didn't apply or isn't supported by the engine
        """
        if method in _CATALOG_KEYS:
            return self._drop_catalog_keys(doc, _CATALOG_KEYS[method])

        handler = getattr(self, f"_{method}", None)
        if handler is None:
            logging.debug(f"Method '{method}' is not supported by the document engine")
            return False
        return handler(doc)

    def _drop_catalog_keys(self, doc, keys):
        catalog = doc.pdf_catalog()
        changed = False
        for key in keys:
            if _has_key(doc, catalog, key):
                doc.xref_set_key(catalog, key, 'null')
                changed = True
        return changed

    def _scrub(self, doc, **enabled):
        flags = {flag: False for flag in _SCRUB_FLAGS}
        flags.update(enabled)
        doc.scrub(**flags)

    def _has_javascript(self, doc):
        catalog = doc.pdf_catalog()
        return _has_key(doc, catalog, 'Names/JavaScript') or _has_key(doc, catalog, 'OpenAction')

    def _remove_javascript(self, doc):
        if not self._has_javascript(doc):
            return False
        self._scrub(doc, javascript=True)
        return True

    def _remove_thumbnails(self, doc):
        changed = False
        for page in doc:
            if _has_key(doc, page.xref, 'Thumb'):
                doc.xref_set_key(page.xref, 'Thumb', 'null')
                changed = True
        return changed

    def _remove_attachments(self, doc):
        count = doc.embfile_count()
        for index in range(count - 1, -1, -1):
            doc.embfile_del(index)
        return count > 0

    def _remove_bookmarks(self, doc):
        if not doc.get_toc(simple=True):
            return False
        doc.set_toc([])
        return True

    def _remove_alternate_content(self, doc):
        changed = False
        for xref in range(1, doc.xref_length()):
            if doc.xref_is_image(xref) and _has_key(doc, xref, 'Alternates'):
                doc.xref_set_key(xref, 'Alternates', 'null')
                changed = True
        return changed

    def _remove_alpha_channels(self, doc):
        changed = False
        for xref in range(1, doc.xref_length()):
            if doc.xref_is_image(xref) and _has_key(doc, xref, 'SMask'):
                doc.xref_set_key(xref, 'SMask', 'null')
                changed = True
        return changed

    def _flatten_forms(self, doc):
        if not doc.is_form_pdf:
            return False
        doc.bake(annots=False, widgets=True)
        return True

    def _flatten_annotations(self, doc):
        if not any(page.first_annot for page in doc):
            return False
        doc.bake(annots=True, widgets=False)
        return True

    def _remove_invisible_text(self, doc):
        self._scrub(doc, hidden_text=True)
        return True

    def _deep_clean_metadata(self, doc):
        changed = False
        if doc.xref_xml_metadata():
            doc.del_xml_metadata()
            changed = True
        for page in doc:
            for key in ('PieceInfo', 'Metadata'):
                if _has_key(doc, page.xref, key):
                    doc.xref_set_key(page.xref, key, 'null')
                    changed = True
        return changed

    def strip_metadata(self, doc):
        metadata = doc.metadata or {}
        if not any(metadata.get(key) for key in _INFO_KEYS):
            return False
        doc.set_metadata({})
        return True
