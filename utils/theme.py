"""
Color conversion helpers for custom form themes.

Colors are stored as ``#RRGGBB``; the public form renders them as CSS
variables in the ``"H S% L%"`` form (no ``hsl()`` wrapper).
"""
import math
import re
from typing import Dict, Optional

_HEX_RE = re.compile(r"^#[0-9A-Fa-f]{6}$")
_NUM_RE = re.compile(r"[\d.]+")

RADIUS_MAP = {
    "none": "0",
    "sm": "0.25rem",
    "md": "0.5rem",
    "lg": "0.75rem",
    "xl": "1rem",
    "full": "9999px",
}

DEFAULT_THEME = {
    "primaryColor": "#10b981",
    "backgroundColor": "#030712",
    "cardBackground": "#0a1120",
    "textColor": "#f8fafc",
    "accentColor": "#f59e0b",
    "borderRadius": "lg",
}

THEME_PRESETS = {
    "default": DEFAULT_THEME,
    "ocean": {
        "primaryColor": "#0ea5e9",
        "backgroundColor": "#0c1929",
        "cardBackground": "#0f2942",
        "textColor": "#e0f2fe",
        "accentColor": "#06b6d4",
        "borderRadius": "lg",
    },
    "sunset": {
        "primaryColor": "#f97316",
        "backgroundColor": "#1c1015",
        "cardBackground": "#2d1a1f",
        "textColor": "#fff7ed",
        "accentColor": "#ec4899",
        "borderRadius": "md",
    },
    "forest": {
        "primaryColor": "#22c55e",
        "backgroundColor": "#0a1a0f",
        "cardBackground": "#122118",
        "textColor": "#f0fdf4",
        "accentColor": "#84cc16",
        "borderRadius": "lg",
    },
    "lavender": {
        "primaryColor": "#a855f7",
        "backgroundColor": "#13101c",
        "cardBackground": "#1e1a2e",
        "textColor": "#faf5ff",
        "accentColor": "#ec4899",
        "borderRadius": "xl",
    },
    "midnight": {
        "primaryColor": "#6366f1",
        "backgroundColor": "#020617",
        "cardBackground": "#0f172a",
        "textColor": "#e2e8f0",
        "accentColor": "#8b5cf6",
        "borderRadius": "md",
    },
    "rose": {
        "primaryColor": "#f43f5e",
        "backgroundColor": "#18080d",
        "cardBackground": "#2a0f17",
        "textColor": "#fff1f2",
        "accentColor": "#fb7185",
        "borderRadius": "lg",
    },
}


def _round(x: float) -> int:
    # Half-up rounding; round() would use banker's rounding
    return int(math.floor(x + 0.5))


def is_valid_hex_color(color: str) -> bool:
    return bool(_HEX_RE.match(color or ""))


def hex_to_hsl(hex_color: str) -> str:
    """Convert ``#RRGGBB`` to ``"H S% L%"``.

    Raises ValueError when the input is not six hex digits.
    """
    clean = hex_color.lstrip("#")
    if len(clean) != 6:
        raise ValueError(f"Invalid hex color: {hex_color!r}")
    r = int(clean[0:2], 16) / 255
    g = int(clean[2:4], 16) / 255
    b = int(clean[4:6], 16) / 255

    mx = max(r, g, b)
    mn = min(r, g, b)
    lightness = (mx + mn) / 2

    h = 0.0
    s = 0.0
    if mx != mn:
        d = mx - mn
        s = d / (2 - mx - mn) if lightness > 0.5 else d / (mx + mn)
        if mx == r:
            h = ((g - b) / d + (6 if g < b else 0)) / 6
        elif mx == g:
            h = ((b - r) / d + 2) / 6
        else:
            h = ((r - g) / d + 4) / 6

    return f"{_round(h * 360)} {_round(s * 100)}% {_round(lightness * 100)}%"


def _hue_to_rgb(p: float, q: float, t: float) -> float:
    if t < 0:
        t += 1
    if t > 1:
        t -= 1
    if t < 1 / 6:
        return p + (q - p) * 6 * t
    if t < 1 / 2:
        return q
    if t < 2 / 3:
        return p + (q - p) * (2 / 3 - t) * 6
    return p


def _parse_hsl(hsl: str) -> Optional[tuple]:
    parts = _NUM_RE.findall(hsl or "")
    if len(parts) < 3:
        return None
    try:
        return float(parts[0]), float(parts[1]), float(parts[2])
    except ValueError:
        return None


def hsl_to_hex(hsl: str) -> str:
    """Convert ``"H S% L%"`` back to ``#rrggbb``; ``#000000`` on malformed input."""
    parsed = _parse_hsl(hsl)
    if parsed is None:
        return "#000000"
    h = parsed[0] / 360
    s = parsed[1] / 100
    lightness = parsed[2] / 100

    if s == 0:
        r = g = b = lightness
    else:
        q = lightness * (1 + s) if lightness < 0.5 else lightness + s - lightness * s
        p = 2 * lightness - q
        r = _hue_to_rgb(p, q, h + 1 / 3)
        g = _hue_to_rgb(p, q, h)
        b = _hue_to_rgb(p, q, h - 1 / 3)

    return "#" + "".join(f"{_round(c * 255):02x}" for c in (r, g, b))


def _shift_lightness(hex_color: str, delta: float) -> str:
    try:
        parsed = _parse_hsl(hex_to_hsl(hex_color))
    except ValueError:
        return hex_color
    if parsed is None:
        return hex_color
    h, s, lightness = parsed
    lightness = min(100.0, max(0.0, lightness + delta))
    return hsl_to_hex(f"{h:g} {s:g}% {lightness:g}%")


def lighten_color(hex_color: str, percent: float) -> str:
    return _shift_lightness(hex_color, percent)


def darken_color(hex_color: str, percent: float) -> str:
    return _shift_lightness(hex_color, -percent)


def generate_theme_styles(theme: Optional[Dict[str, str]]) -> Dict[str, str]:
    """Map a custom theme onto the CSS variables used by the public form page."""
    if not theme:
        return {}

    styles: Dict[str, str] = {}
    primary = theme.get("primaryColor")
    if primary:
        styles["--primary"] = hex_to_hsl(primary)
        styles["--ring"] = hex_to_hsl(primary)
    if theme.get("backgroundColor"):
        styles["--background"] = hex_to_hsl(theme["backgroundColor"])
    card = theme.get("cardBackground")
    if card:
        styles["--card"] = hex_to_hsl(card)
        styles["--popover"] = hex_to_hsl(card)
    text = theme.get("textColor")
    if text:
        value = hex_to_hsl(text)
        styles["--foreground"] = value
        styles["--card-foreground"] = value
        styles["--popover-foreground"] = value
    if theme.get("accentColor"):
        styles["--accent"] = hex_to_hsl(theme["accentColor"])
    if theme.get("borderRadius"):
        styles["--radius"] = RADIUS_MAP.get(theme["borderRadius"], "0.75rem")
    return styles
