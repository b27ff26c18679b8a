"""Adaptive-bitrate ladder selection.

A rendition is added for every threshold the source height meets, so a
1080p source gets 1080p, 720p and 360p. Sources shorter than 360 lines
still get a single 360p rendition.
"""

from dataclasses import dataclass


@dataclass(frozen=True)
class Rendition:
    """One resolution/bitrate variant of the HLS output."""
    name: str
    target_height: int
    video_bitrate: str
    maxrate: str
    bufsize: str
    audio_bitrate: str


R1080P = Rendition("1080p", 1080, "5000k", "5350k", "7500k", "192k")
R720P = Rendition("720p", 720, "2800k", "2996k", "4200k", "128k")
R360P = Rendition("360p", 360, "800k", "856k", "1200k", "96k")

# Highest first; each entry is checked on its own.
LADDER = (R1080P, R720P, R360P)


def select_ladder(source_height: int) -> list[Rendition]:
    """Return the renditions for a source, highest resolution first."""
    if source_height < 0:
        raise ValueError(f"source height must be non-negative, got {source_height}")
    renditions = [r for r in LADDER if source_height >= r.target_height]
    if not renditions:
        renditions = [R360P]
    return renditions


def declaration_order(renditions) -> list[Rendition]:
    """Lowest resolution first, the order variant streams are declared in."""
    return sorted(renditions, key=lambda r: r.target_height)
