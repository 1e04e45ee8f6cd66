# backend/calilights/utils/color.py
"""Hue arithmetic shared by entry analysis, prompt building and bridges."""

import math
from typing import Iterable, Optional

HUE_LABELS = (
    "ember",
    "tangerine",
    "gold",
    "citrine",
    "flora",
    "sage",
    "tidal",
    "cobalt",
    "nocturne",
    "violet",
    "fuchsia",
    "rose",
)


def hex_from_rgb(r: float, g: float, b: float) -> str:
    def channel(x: float) -> str:
        return f"{max(0, min(255, round(x))):02X}"

    return "#" + channel(r) + channel(g) + channel(b)


def hue_from_rgb(r: float, g: float, b: float) -> float:
    """HSL hue in degrees [0, 360); greys map to 0."""
    rn, gn, bn = r / 255, g / 255, b / 255
    high = max(rn, gn, bn)
    low = min(rn, gn, bn)
    delta = high - low
    if delta == 0:
        return 0.0

    if high == rn:
        hue = ((gn - bn) / delta) % 6
    elif high == gn:
        hue = (bn - rn) / delta + 2
    else:
        hue = (rn - gn) / delta + 4

    hue *= 60
    if hue < 0:
        hue += 360
    return hue


def circular_mean(hues: Iterable[float]) -> Optional[float]:
    """Mean of angles in degrees, or None when there are none."""
    values = [h for h in hues if h is not None]
    if not values:
        return None
    x = sum(math.cos(math.radians(h)) for h in values)
    y = sum(math.sin(math.radians(h)) for h in values)
    return (math.degrees(math.atan2(y, x)) + 360) % 360


def hue_distance(a: Optional[float], b: Optional[float]) -> Optional[float]:
    """Shortest distance around the hue circle, min(|a-b|, 360-|a-b|)."""
    if a is None or b is None:
        return None
    diff = abs(a - b) % 360
    return 360 - diff if diff > 180 else diff


def hue_bucket(hue: float) -> str:
    normalized = ((hue % 360) + 360) % 360
    return HUE_LABELS[int(normalized // 30) % len(HUE_LABELS)]
