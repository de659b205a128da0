"""
Maps a target size percentage to interpolated compression settings.

The target percentage maps to 3 zones:
- 10-40%  -> aggressive range (quality 10-38, 72 DPI, most methods on)
- 40-70%  -> balanced range   (quality 38-67, 72-150 DPI, moderate methods)
- 70-100% -> minimal range    (quality 67-95, 150-300 DPI, light methods)

When a pass misses the target, escalation tiers progressively enable more
destructive methods:
- Tier 1: halve quality, enable the risky image/content methods
- Tier 2: 30% quality, enable all structural cleanup and flatten everything
- Tier 3: nuclear, minimum quality and every method on
"""

from compress_pdfs.method_categories import all_methods_enabled
from compress_pdfs.settings import (
    MAX_QUALITY,
    MIN_QUALITY,
    NUCLEAR_MIN_SIZE_THRESHOLD,
    SettingsVector,
    clamp,
    default_methods,
    round_half_up,
)

MIN_TARGET_PERCENT = 10
MAX_TARGET_PERCENT = 100

MAX_ESCALATION_TIERS = 3

# Enabled at <= 50%
AGGRESSIVE_METHODS = (
    'png_to_jpeg',
    'remove_alpha_channels',
    'remove_attachments',
    'remove_alternate_content',
    'remove_invisible_text',
    'reduce_vector_precision',
)

# Enabled at <= 30%
MAX_COMPRESSION_METHODS = (
    'remove_bookmarks',
    'remove_named_destinations',
    'remove_hidden_layers',
    'remove_page_labels',
    'flatten_forms',
    'flatten_annotations',
    'cmyk_to_rgb',
)

TIER_1_METHODS = (
    'png_to_jpeg',
    'remove_alpha_channels',
    'remove_color_profiles',
    'remove_attachments',
    'remove_alternate_content',
    'remove_invisible_text',
    'cmyk_to_rgb',
    'remove_duplicate_resources',
    'remove_unused_fonts',
    'deep_clean_metadata',
    'downsample_images',
    'deduplicate_shadings',
    'remove_unused_shadings',
    'reduce_vector_precision',
)

TIER_2_METHODS = TIER_1_METHODS + (
    'remove_thumbnails',
    'inline_to_xobject',
    'compress_content_streams',
    'remove_javascript',
    'remove_bookmarks',
    'remove_named_destinations',
    'remove_article_threads',
    'remove_web_capture_info',
    'remove_hidden_layers',
    'remove_page_labels',
    'flatten_forms',
    'flatten_annotations',
)


def _lerp(a, b, t):
    return round_half_up(a + (b - a) * t)


def clamp_target_percent(target_percent):
    return clamp(target_percent, MIN_TARGET_PERCENT, MAX_TARGET_PERCENT)


def target_bytes_for_percent(original_size, target_percent):
    """Byte target for a percentage of the original size"""
    return round_half_up(original_size * clamp_target_percent(target_percent) / 100)


def settings_for_target_percent(target_percent):
    """
    Return interpolated settings for a target size given as a percentage of
    the original (values are clamped to 10-100).

    Args:
        target_percent: desired output size as % of the original

    Returns:
        SettingsVector: a fresh vector carrying every method key
    """
    pct = clamp_target_percent(target_percent)

    # 10% -> 10, 50% -> 48, 100% -> 95
    quality = clamp(_lerp(10, 95, (pct - 10) / 90), MIN_QUALITY, MAX_QUALITY)

    if pct <= 40:
        target_dpi = 72
    elif pct <= 70:
        target_dpi = _lerp(72, 150, (pct - 40) / 30)
    else:
        target_dpi = _lerp(150, 300, (pct - 70) / 30)

    enable_downsampling = pct <= 80
    enable_aggressive = pct <= 50
    enable_max_compression = pct <= 30

    if pct <= 15:
        return SettingsVector(
            quality=max(MIN_QUALITY, quality),
            target_dpi=72,
            enable_downsampling=True,
            min_size_threshold=NUCLEAR_MIN_SIZE_THRESHOLD,
            methods=all_methods_enabled(),
        )

    methods = default_methods()
    methods.update({
        'use_object_streams': True,
        'strip_metadata': True,
        'recompress_images': True,
        'downsample_images': enable_downsampling,
        'remove_duplicate_resources': pct <= 80,
        'remove_color_profiles': pct <= 85,
        'deep_clean_metadata': pct <= 80,
        'deduplicate_shadings': True,
        'remove_unused_shadings': True,
    })
    for method in AGGRESSIVE_METHODS:
        methods[method] = enable_aggressive
    for method in MAX_COMPRESSION_METHODS:
        methods[method] = enable_max_compression

    return SettingsVector(
        quality=quality,
        target_dpi=target_dpi,
        enable_downsampling=enable_downsampling,
        methods=methods,
    )


def _nuclear_settings(base):
    return SettingsVector(
        quality=MIN_QUALITY,
        target_dpi=72,
        enable_downsampling=True,
        min_size_threshold=NUCLEAR_MIN_SIZE_THRESHOLD,
        methods=all_methods_enabled(),
    )


def _tier_1_settings(base):
    quality = max(MIN_QUALITY, round_half_up(base.quality * 0.5))
    return base.with_methods(TIER_1_METHODS).copy(
        quality=quality, target_dpi=72, enable_downsampling=True,
    )


def _tier_2_settings(base):
    quality = max(MIN_QUALITY, round_half_up(base.quality * 0.3))
    return base.with_methods(TIER_2_METHODS).copy(
        quality=quality, target_dpi=72, enable_downsampling=True,
    )


# Index 0 is tier 1; tiers above the last entry saturate to nuclear
_LADDER = (_tier_1_settings, _tier_2_settings, _nuclear_settings)


def escalation_tier(tier, base):
    """
    Return progressively more aggressive settings for an escalation tier.

    Tier 0 is the initial pass (settings_for_target_percent); tiers 1-3
    escalate from the base vector. Any tier >= 3 is the terminal nuclear
    vector, so escalation_tier(3, s) == escalation_tier(99, s).

    Args:
        tier: escalation tier number (values below 1 are treated as 1)
        base: SettingsVector the tier escalates from (not mutated)

    Returns:
        SettingsVector
    """
    index = clamp(int(tier), 1, MAX_ESCALATION_TIERS) - 1
    return _LADDER[index](base)
