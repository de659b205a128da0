"""
Risk classification for every compression method.

Each method belongs to exactly one risk tier:
- safe: no visual or functional loss
- medium: some quality or content loss
- high: significant / destructive changes

The tier tuples are the source of truth; METHOD_RISK_LEVELS is derived from
them and checked for total, non-overlapping coverage when this module loads.
"""

from types import MappingProxyType

RISK_SAFE = 'safe'
RISK_MEDIUM = 'medium'
RISK_HIGH = 'high'

# Walk order for progressive selection (least destructive first)
RISK_ORDER = (RISK_SAFE, RISK_MEDIUM, RISK_HIGH)

SAFE_METHODS = (
    'use_object_streams',
    'strip_metadata',
    'deep_clean_metadata',
    'compress_content_streams',
    'remove_orphan_objects',
    'remove_duplicate_resources',
    'remove_thumbnails',
    'remove_javascript',
    'remove_article_threads',
    'remove_web_capture_info',
    'remove_color_profiles',
    'remove_unused_fonts',
    'inline_to_xobject',
    'deduplicate_shadings',
    'remove_unused_shadings',
)

MEDIUM_METHODS = (
    'recompress_images',
    'downsample_images',
    'png_to_jpeg',
    'remove_alpha_channels',
    'cmyk_to_rgb',
    'remove_bookmarks',
    'remove_named_destinations',
    'remove_page_labels',
    'remove_attachments',
    'remove_alternate_content',
    'remove_hidden_layers',
    'reduce_vector_precision',
)

HIGH_METHODS = (
    'convert_to_grayscale',
    'convert_to_monochrome',
    'flatten_forms',
    'flatten_annotations',
    'remove_invisible_text',
)

ALL_METHODS = SAFE_METHODS + MEDIUM_METHODS + HIGH_METHODS

_TIERS = {
    RISK_SAFE: SAFE_METHODS,
    RISK_MEDIUM: MEDIUM_METHODS,
    RISK_HIGH: HIGH_METHODS,
}

METHOD_RISK_LEVELS = MappingProxyType({
    method: risk
    for risk, methods in _TIERS.items()
    for method in methods
})


def check_classification():
    """
    Verify that every method maps to exactly one risk tier.

    Raises:
        RuntimeError: if a method appears twice or the table is not total
    """
    seen = {}
    for risk, methods in _TIERS.items():
        for method in methods:
            if method in seen:
                raise RuntimeError(
                    f"Method '{method}' is classified as both '{seen[method]}' and '{risk}'"
                )
            seen[method] = risk

    missing = set(ALL_METHODS) - set(METHOD_RISK_LEVELS)
    if missing or len(METHOD_RISK_LEVELS) != len(ALL_METHODS):
        raise RuntimeError(f"Risk table does not cover all methods: missing {sorted(missing)}")


def risk_of(method):
    """Return the risk tier for a method, raising KeyError for unknown methods"""
    return METHOD_RISK_LEVELS[method]


def methods_for_risk(risk):
    return _TIERS[risk]


def all_methods_enabled():
    """Return a method table with every method switched on"""
    return {method: True for method in ALL_METHODS}


check_classification()
