"""
Compression potential calculator

Uses measured per-method savings to work out how far a PDF can be compressed
at each risk tier (safe / medium / high), and which methods to enable to reach
a byte target, starting from the safest ones.
"""

from dataclasses import dataclass
from typing import Optional, Tuple

from compress_pdfs.method_categories import RISK_ORDER, risk_of


@dataclass
class MethodMeasurement:
    method: str
    saved_bytes: int
    resulting_size: int
    # (min, max) estimate for image methods measured at several qualities
    savings_range: Optional[Tuple[int, int]] = None
    # still being measured in the background; excluded from aggregates
    pending: bool = False

    @property
    def effective_savings(self):
        if self.savings_range is not None:
            return self.savings_range[1]
        return self.saved_bytes

    def to_dict(self):
        return {
            'method': self.method,
            'saved_bytes': self.saved_bytes,
            'resulting_size': self.resulting_size,
            'savings_range': list(self.savings_range) if self.savings_range else None,
            'pending': self.pending,
        }

    @classmethod
    def from_dict(cls, data):
        savings_range = data.get('savings_range')
        return cls(
            method=data['method'],
            saved_bytes=int(data.get('saved_bytes', 0)),
            resulting_size=int(data.get('resulting_size', 0)),
            savings_range=tuple(savings_range) if savings_range else None,
            pending=bool(data.get('pending', False)),
        )


@dataclass
class CompressionPotential:
    safe_savings: int
    medium_savings: int
    total_savings: int
    safe_floor: int
    medium_floor: int
    absolute_floor: int
    has_pending: bool
    pending_count: int

    def to_dict(self):
        return dict(self.__dict__)


def calculate_compression_potential(original_size, measurements):
    """
    Calculate the compression potential from measured method results.

    Pending measurements are counted but contribute nothing. For methods with
    a savings range the max (most aggressive) value is used.

    Args:
        original_size: size of the original document in bytes
        measurements: iterable of MethodMeasurement

    Returns:
        CompressionPotential with cumulative savings per tier and floor sizes
    """
    savings = {risk: 0 for risk in RISK_ORDER}
    pending_count = 0

    for measurement in measurements:
        if measurement.pending:
            pending_count += 1
            continue

        effective = measurement.effective_savings
        if effective <= 0:
            continue
        savings[risk_of(measurement.method)] += effective

    safe_savings = savings['safe']
    medium_savings = safe_savings + savings['medium']
    total_savings = medium_savings + savings['high']

    return CompressionPotential(
        safe_savings=safe_savings,
        medium_savings=medium_savings,
        total_savings=total_savings,
        safe_floor=max(0, original_size - safe_savings),
        medium_floor=max(0, original_size - medium_savings),
        absolute_floor=max(0, original_size - total_savings),
        has_pending=pending_count > 0,
        pending_count=pending_count,
    )


def select_methods_for_target(original_size, target_bytes, measurements):
    """
    Return the set of methods to enable to reach target_bytes.

    Methods are grouped by risk and walked safe -> medium -> high; within a
    tier the biggest savers go first. Selection stops as soon as the running
    size reaches the target, so a riskier method is never picked while a
    safer unused one would have been enough.
    """
    tiers = {risk: [] for risk in RISK_ORDER}

    for measurement in measurements:
        if measurement.pending:
            continue
        effective = measurement.effective_savings
        if effective <= 0:
            continue
        tiers[risk_of(measurement.method)].append((measurement.method, effective))

    selected = set()
    current_size = original_size

    for risk in RISK_ORDER:
        if current_size <= target_bytes:
            break
        # sorted() is stable, equal savers keep their input order
        for method, effective in sorted(tiers[risk], key=lambda item: item[1], reverse=True):
            selected.add(method)
            current_size -= effective
            if current_size <= target_bytes:
                break

    return selected
