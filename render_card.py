"""
Console-themed SVG stats card.

Layout (top to bottom): prompt line, five stat lines, language pie chart
with a legend to its right. Slices under 1% are grouped as "Others".
"""

from __future__ import annotations
import math
import os
from typing import Any, Dict, List, Mapping

from lxml import etree

SVG_NS = "http://www.w3.org/2000/svg"

WIDTH = 1000
PADDING = 50
LINE_SPACE = 35
FONT_SIZE = 30
TEXT_HEIGHT = 22  # ascent + descent of 'w' at 30px monospace
PIE_SIZE = 300
LEGEND_ROW = 35
MIN_SLICE_PCT = 1.0
MIN_LABEL_PCT = 3.0

LANGUAGE_COLORS = {
    "Python": "#3776AB",
    "TypeScript": "#3178C6",
    "JavaScript": "#F7DF1E",
    "CSS": "#1572B6",
    "Rust": "#B7410E",
    "Solidity": "#363636",
    "Circom": "#58A6FF",
    "Haskell": "#5D4F85",
    "MATLAB": "#0076A8",
    "C++": "#00599C",
    "R": "#276DC3",
    "C": "#A8B9CC",
    "Java": "#007396",
    "Ruby": "#CC342D",
    "Shell": "#4EAA25",
    "PowerShell": "#5391FE",
    "PLSQL": "#F80000",
    "Makefile": "#427819",
    "Others": "#808080",
}
FALLBACK_COLORS = [
    "#FF6B6B", "#4ECDC4", "#FFE66D", "#1A535C", "#F7FFF7",
    "#9B5DE5", "#F15BB5", "#FEE440", "#00BBF9", "#00F5D4",
]

STYLE = """
    text, tspan { white-space: pre; font-family: monospace; }
    .console { font-size: %dpx; fill: #00FF00; }
    .cyan { fill: #00FFFF; }
    .white { fill: #FFFFFF; }
    .green { fill: #4CCC6C; }
    .red { fill: #FF5555; }
    .legend { font-size: 20px; }
""" % FONT_SIZE


def format_int(num: int) -> str:
    return f"{num:,}"


def _el(parent, tag: str, text: str = None, **attrs):
    el = etree.SubElement(parent, f"{{{SVG_NS}}}{tag}", {k.replace("_", "-"): str(v) for k, v in attrs.items()})
    if text is not None:
        el.text = text
    return el


def language_slices(languages: Mapping[str, int]) -> List[Dict[str, Any]]:
    """Sorted slices with percentage and color; small ones folded into Others."""
    total = sum(size for size in languages.values() if size > 0)
    if total <= 0:
        return []
    ordered = sorted(((n, s) for n, s in languages.items() if s > 0), key=lambda x: x[1], reverse=True)
    slices = []
    others = 0
    for name, size in ordered:
        pct = size / total * 100
        if pct >= MIN_SLICE_PCT:
            slices.append({"name": name, "size": size, "percentage": pct})
        else:
            others += size
    if others:
        slices.append({"name": "Others", "size": others, "percentage": others / total * 100})
    for i, s in enumerate(slices):
        s["color"] = LANGUAGE_COLORS.get(s["name"]) or FALLBACK_COLORS[i % len(FALLBACK_COLORS)]
    return slices


def label_color(hex_color: str) -> str:
    r, g, b = (int(hex_color[i:i + 2], 16) for i in (1, 3, 5))
    brightness = (r * 299 + g * 587 + b * 114) / 1000
    return "#000000" if brightness > 128 else "#FFFFFF"


def _polar(cx: float, cy: float, radius: float, degrees: float):
    rad = math.radians(degrees - 90)
    return cx + radius * math.cos(rad), cy + radius * math.sin(rad)


def draw_pie(parent, slices: List[Dict[str, Any]], size: int = PIE_SIZE):
    radius = size / 2
    cx = cy = radius
    if not slices:
        _el(parent, "circle", cx=cx, cy=cy, r=radius - 1, fill="none", stroke="#333", stroke_width=2)
        return
    if len(slices) == 1:
        _el(parent, "circle", cx=cx, cy=cy, r=radius, fill=slices[0]["color"], stroke="#333", stroke_width=0.5)
    else:
        start = 0.0
        for s in slices:
            angle = s["percentage"] / 100 * 360
            x1, y1 = _polar(cx, cy, radius, start)
            x2, y2 = _polar(cx, cy, radius, start + angle)
            large_arc = 1 if angle > 180 else 0
            d = f"M {cx} {cy} L {x1:.3f} {y1:.3f} A {radius} {radius} 0 {large_arc} 1 {x2:.3f} {y2:.3f} Z"
            _el(parent, "path", d=d, fill=s["color"], stroke="#333", stroke_width=0.5)
            s["mid_angle"] = start + angle / 2
            start += angle
    for s in slices:
        if s["percentage"] < MIN_LABEL_PCT:
            continue
        if len(slices) == 1:
            lx, ly = cx, cy
        else:
            lx, ly = _polar(cx, cy, radius * 0.7, s["mid_angle"])
        _el(parent, "text", f"{round(s['percentage'])}%", x=f"{lx:.3f}", y=f"{ly:.3f}",
            text_anchor="middle", dominant_baseline="middle", fill=label_color(s["color"]),
            font_weight="bold", font_family="monospace")


def draw_legend(parent, slices: List[Dict[str, Any]]):
    if not slices:
        _el(parent, "text", "no language data", x=0, y=16, **{"class": "white legend"})
        return
    for i, s in enumerate(slices):
        y = i * LEGEND_ROW
        _el(parent, "rect", x=0, y=y, width=20, height=20, fill=s["color"], stroke="#333", stroke_width=1)
        _el(parent, "text", f"{s['name'].ljust(15)} {s['percentage']:.1f}%", x=30, y=y + 16,
            **{"class": "white legend"})


def render_svg(stats: Mapping[str, Any], username: str) -> str:
    command_y = PADDING + TEXT_HEIGHT
    stats_y = command_y + 1.5 * LINE_SPACE
    pie_y = stats_y + 4 * LINE_SPACE + 20
    height = pie_y + PIE_SIZE + PADDING

    root = etree.Element(f"{{{SVG_NS}}}svg", nsmap={None: SVG_NS},
                         width=str(WIDTH), height=f"{height:g}", viewBox=f"0 0 {WIDTH} {height:g}")
    _el(root, "style", STYLE)
    _el(root, "rect", width="100%", height="100%", fill="black", rx=15)

    additions = stats.get("additions", 0)
    deletions = stats.get("deletions", 0)
    console = _el(root, "text", x=PADDING, y=PADDING, **{"class": "console"})
    _el(console, "tspan", f"$ {username} github-stats", x=PADDING, y=f"{command_y:g}")
    lines = [
        ("account-age:", f"{format_int(stats.get('account_age', 0))} days"),
        ("repos:", format_int(stats.get("repo_count", 0))),
        ("commits:", format_int(stats.get("commits", 0))),
        ("lines:", None),
        ("languages:", ""),
    ]
    for i, (key, value) in enumerate(lines):
        row = _el(console, "tspan", x=PADDING, y=f"{stats_y + i * LINE_SPACE:g}")
        k = _el(row, "tspan", key, **{"class": "cyan"})
        k.tail = " "
        if value is None:
            v = _el(row, "tspan", f"{format_int(additions - deletions)} (", **{"class": "white"})
            add = _el(v, "tspan", f"{format_int(additions)}++", **{"class": "green"})
            add.tail = ", "
            dele = _el(v, "tspan", f"{format_int(deletions)}--", **{"class": "red"})
            dele.tail = ")"
        elif value:
            _el(row, "tspan", value, **{"class": "white"})

    slices = language_slices(stats.get("languages") or {})
    pie = _el(root, "g", transform=f"translate({PADDING}, {pie_y:g})")
    draw_pie(pie, slices)
    legend = _el(root, "g", transform=f"translate({PADDING + PIE_SIZE + 50}, {pie_y + 20:g})")
    draw_legend(legend, slices)

    return etree.tostring(root, encoding="unicode", pretty_print=True)


def write_svg(path: str, markup: str):
    directory = os.path.dirname(path)
    if directory:
        os.makedirs(directory, exist_ok=True)
    with open(path, "w", encoding="utf-8") as f:
        f.write(markup)
