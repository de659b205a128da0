"""
Settings vector shared by the target mapper, the escalation ladder and the
compression pipeline.

A SettingsVector always carries every method key; partial vectors are filled
from DEFAULT_METHODS when built from user input.
"""

import math
from dataclasses import dataclass, field

from compress_pdfs.method_categories import ALL_METHODS

MIN_QUALITY = 5
MAX_QUALITY = 100
DEFAULT_QUALITY = 75
DEFAULT_TARGET_DPI = 150
DEFAULT_MIN_SIZE_THRESHOLD = 10 * 1024  # 10KB
NUCLEAR_MIN_SIZE_THRESHOLD = 1024  # process even 1KB images

# Methods that are on unless the caller says otherwise
_DEFAULT_ON = {
    'use_object_streams',
    'strip_metadata',
    'recompress_images',
    'remove_color_profiles',
    'remove_thumbnails',
    'remove_duplicate_resources',
    'remove_unused_fonts',
    'remove_javascript',
    'remove_article_threads',
    'remove_web_capture_info',
    'deep_clean_metadata',
    'inline_to_xobject',
    'compress_content_streams',
    'remove_orphan_objects',
}


def default_methods():
    return {method: method in _DEFAULT_ON for method in ALL_METHODS}


def round_half_up(value):
    """Round .5 away from zero for positive values, so 2.5 -> 3 (not banker's rounding)"""
    return int(math.floor(value + 0.5))


def clamp(value, low, high):
    return max(low, min(high, value))


@dataclass
class SettingsVector:
    quality: int = DEFAULT_QUALITY
    target_dpi: int = DEFAULT_TARGET_DPI
    enable_downsampling: bool = False
    min_size_threshold: int = DEFAULT_MIN_SIZE_THRESHOLD
    methods: dict = field(default_factory=default_methods)

    def enabled(self, method):
        return bool(self.methods[method])

    def enabled_methods(self):
        return [method for method in ALL_METHODS if self.methods[method]]

    def enabled_method_count(self):
        return len(self.enabled_methods())

    def copy(self, **changes):
        """Return a new vector with its own method table, applying any field changes"""
        values = {
            'quality': self.quality,
            'target_dpi': self.target_dpi,
            'enable_downsampling': self.enable_downsampling,
            'min_size_threshold': self.min_size_threshold,
            'methods': dict(self.methods),
        }
        values.update(changes)
        return SettingsVector(**values)

    def with_methods(self, methods):
        """Return a copy with the given methods switched on (never switches any off)"""
        table = dict(self.methods)
        for method in methods:
            if method not in table:
                raise KeyError(f"Unknown compression method: {method}")
            table[method] = True
        return self.copy(methods=table)

    def to_dict(self):
        return {
            'quality': self.quality,
            'target_dpi': self.target_dpi,
            'enable_downsampling': self.enable_downsampling,
            'min_size_threshold': self.min_size_threshold,
            'methods': dict(self.methods),
        }

    @classmethod
    def from_dict(cls, data):
        """
        Build a vector from user-supplied JSON.

        Missing fields and method keys fall back to defaults. Unknown method
        keys are rejected so typos don't silently disable anything.

        Raises:
            ValueError: on non-object input, unknown method keys or non-numeric values
        """
        data = data or {}
        if not isinstance(data, dict):
            raise ValueError(f"Settings must be an object, got {type(data).__name__}")
        requested = data.get('methods') or {}
        if not isinstance(requested, dict):
            raise ValueError(f"Settings 'methods' must be an object, got {type(requested).__name__}")

        methods = default_methods()
        unknown = set(requested) - set(methods)
        if unknown:
            raise ValueError(f"Unknown compression methods: {', '.join(sorted(unknown))}")
        for method, value in requested.items():
            methods[method] = bool(value)

        try:
            quality = clamp(int(data.get('quality', DEFAULT_QUALITY)), MIN_QUALITY, MAX_QUALITY)
            target_dpi = int(data.get('target_dpi', DEFAULT_TARGET_DPI))
            threshold = int(data.get('min_size_threshold', DEFAULT_MIN_SIZE_THRESHOLD))
        except (TypeError, ValueError) as e:
            raise ValueError(f"Invalid settings value: {e}")

        return cls(
            quality=quality,
            target_dpi=max(1, target_dpi),
            enable_downsampling=bool(data.get('enable_downsampling', False)),
            min_size_threshold=max(0, threshold),
            methods=methods,
        )


def default_settings():
    return SettingsVector()


def _preset(quality, target_dpi, enable_downsampling, extra_methods=()):
    methods = default_methods()
    methods['downsample_images'] = enable_downsampling
    for method in extra_methods:
        methods[method] = True
    return SettingsVector(
        quality=quality,
        target_dpi=target_dpi,
        enable_downsampling=enable_downsampling,
        methods=methods,
    )


# Quality presets
PRESETS = {
    'aggressive': _preset(40, 72, True),
    'balanced': _preset(65, 150, True, (
        'remove_duplicate_resources',
        'remove_color_profiles',
        'deep_clean_metadata',
    )),
    'minimal': _preset(85, 200, False),
}


def preset_settings(name):
    """Return a fresh copy of a named preset"""
    try:
        return PRESETS[name.lower()].copy()
    except KeyError:
        raise ValueError(f"Unknown preset '{name}'. Choose: {', '.join(PRESETS)}")
