"""Screenshot comparison with a per-channel tolerance."""

from __future__ import annotations

import io
from dataclasses import dataclass

from PIL import Image, ImageChops


@dataclass(frozen=True)
class ImageDiff:
    diff_pixels: int
    total_pixels: int
    baseline_size: tuple[int, int]
    candidate_size: tuple[int, int]

    @property
    def size_mismatch(self) -> bool:
        return self.baseline_size != self.candidate_size

    @property
    def diff_pct(self) -> float:
        if self.total_pixels == 0:
            return 0.0
        return self.diff_pixels / self.total_pixels * 100

    def exceeds(self, threshold_pct: float) -> bool:
        """True when the images differ by more than ``threshold_pct`` percent."""
        if self.size_mismatch:
            return True
        if threshold_pct <= 0:
            return self.diff_pixels > 0
        return self.diff_pct > threshold_pct

    def describe(self) -> str:
        if self.size_mismatch:
            bw, bh = self.baseline_size
            cw, ch = self.candidate_size
            return f"image size changed from {bw}x{bh} to {cw}x{ch}"
        return (
            f"{self.diff_pixels} of {self.total_pixels} pixels differ "
            f"({self.diff_pct:.3f}%)"
        )


def load_rgb(data: bytes) -> Image.Image:
    with Image.open(io.BytesIO(data)) as img:
        return img.convert("RGB")


def compare_images(candidate: bytes, baseline: bytes, pixel_tolerance: int = 0) -> ImageDiff:
    """Count pixels whose largest channel difference exceeds ``pixel_tolerance``."""
    current = load_rgb(candidate)
    golden = load_rgb(baseline)
    if current.size != golden.size:
        total = max(current.width * current.height, golden.width * golden.height)
        return ImageDiff(total, total, golden.size, current.size)

    diff = ImageChops.difference(current, golden)
    red, green, blue = diff.split()
    worst = ImageChops.lighter(ImageChops.lighter(red, green), blue)
    mask = worst.point(lambda v: 255 if v > pixel_tolerance else 0)
    diff_pixels = mask.histogram()[255]
    return ImageDiff(diff_pixels, current.width * current.height, golden.size, current.size)
