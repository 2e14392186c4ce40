"""Snapshot capture, golden comparison and failure persistence.

Compares candidate screenshots against golden PNGs pixel-by-pixel and
writes a highlighted diff image and JSON summary when they do not match.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterable, List, Optional, Tuple

import numpy as np
from PIL import Image

from .artifacts import CANDIDATE_SUFFIX, DIFF_SUFFIX, ArtifactManager, plain_component

Rect = Tuple[int, int, int, int]  # (x0, y0, x1, y1), inclusive bounds


@dataclass(frozen=True)
class ComparePolicy:
    """How strictly a candidate must match its golden.

    The default is exact equality. A tolerant policy accepts pixels whose
    largest channel difference is at most ``channel_tolerance`` and up to
    ``max_diff_pixels`` pixels beyond that; ``ignore_rects`` are never compared.
    """
    channel_tolerance: int = 0
    max_diff_pixels: int = 0
    ignore_rects: Tuple[Rect, ...] = ()

    @property
    def exact(self) -> bool:
        return self.channel_tolerance == 0 and self.max_diff_pixels == 0 and not self.ignore_rects

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> "ComparePolicy":
        if not data:
            return cls()
        mode = data.get("mode", "exact")
        if mode == "exact":
            return cls()
        if mode != "tolerant":
            raise ValueError(f"Unknown compare mode: {mode!r}")
        channel_tolerance = int(data.get("channel_tolerance", 0))
        max_diff_pixels = int(data.get("max_diff_pixels", 0))
        if channel_tolerance < 0 or channel_tolerance > 255 or max_diff_pixels < 0:
            raise ValueError("channel_tolerance must be 0..255 and max_diff_pixels >= 0")
        rects = []
        for rect in data.get("ignore", []):
            if len(rect) != 4:
                raise ValueError(f"Ignore rectangle must be [x0, y0, x1, y1], got {rect!r}")
            rects.append(tuple(int(v) for v in rect))
        return cls(channel_tolerance, max_diff_pixels, tuple(rects))

    def to_dict(self) -> dict:
        if self.exact:
            return {"mode": "exact"}
        return {
            "mode": "tolerant",
            "channel_tolerance": self.channel_tolerance,
            "max_diff_pixels": self.max_diff_pixels,
            "ignore": [list(r) for r in self.ignore_rects],
        }


EXACT = ComparePolicy()


@dataclass
class ComparisonResult:
    """Result of a snapshot comparison."""

    match: bool
    total_pixels: int
    diff_pixels: int
    diff_pct: float
    bbox: Optional[Rect]  # (min_x, min_y, max_x, max_y) or None
    max_channel_delta: int = 0
    reason: str = ""
    diff_image: Optional[Image.Image] = field(default=None, repr=False, compare=False)

    def summary(self) -> str:
        if self.match:
            if self.diff_pixels:
                return f"match within tolerance ({self.diff_pixels} pixels differ)"
            return "identical"
        if self.reason:
            return self.reason
        return (
            f"{self.diff_pixels} / {self.total_pixels} pixels differ "
            f"({self.diff_pct:.4f}%), max channel delta {self.max_channel_delta}, bbox {self.bbox}"
        )

    def to_dict(self) -> dict:
        return {
            "match": self.match,
            "total_pixels": self.total_pixels,
            "diff_pixels": self.diff_pixels,
            "diff_pct": self.diff_pct,
            "bbox": list(self.bbox) if self.bbox else None,
            "max_channel_delta": self.max_channel_delta,
            "reason": self.reason,
        }


@dataclass(frozen=True)
class Snapshot:
    """A bitmap plus the metadata needed to find its golden counterpart."""
    scenario: str
    label: str
    golden_name: str
    image: Image.Image = field(repr=False, compare=False)
    kind: str = "candidate"  # 'candidate' | 'golden'
    captured_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def width(self) -> int:
        return self.image.size[0]

    @property
    def height(self) -> int:
        return self.image.size[1]

    @property
    def stem(self) -> str:
        return Path(self.golden_name).stem


def _normalise_rects(rects: Iterable[Rect], width: int, height: int) -> List[Rect]:
    norm = []
    for (x0, y0, x1, y1) in rects:
        x0 = max(0, min(width - 1, x0))
        y0 = max(0, min(height - 1, y0))
        x1 = max(0, min(width - 1, x1))
        y1 = max(0, min(height - 1, y1))
        if x1 >= x0 and y1 >= y0:
            norm.append((x0, y0, x1, y1))
    return norm


def compare_images(candidate: Image.Image, golden: Image.Image,
                   policy: ComparePolicy = EXACT, with_diff_image: bool = True) -> ComparisonResult:
    """Compare two images under ``policy``.

    Differing dimensions are always a mismatch.
    """
    width, height = golden.size
    total_pixels = width * height

    if candidate.size != golden.size:
        return ComparisonResult(
            match=False,
            total_pixels=total_pixels,
            diff_pixels=total_pixels,
            diff_pct=100.0,
            bbox=None,
            reason=f"Snapshot dimensions differ: golden={golden.size}, candidate={candidate.size}",
        )

    arr_candidate = np.asarray(candidate.convert("RGBA"), dtype=np.int16)
    arr_golden = np.asarray(golden.convert("RGBA"), dtype=np.int16)

    if policy.exact and np.array_equal(arr_candidate, arr_golden):
        return ComparisonResult(True, total_pixels, 0, 0.0, None)

    delta = np.abs(arr_candidate - arr_golden).max(axis=2)
    for (x0, y0, x1, y1) in _normalise_rects(policy.ignore_rects, width, height):
        delta[y0:y1 + 1, x0:x1 + 1] = 0

    mask = delta > policy.channel_tolerance
    diff_pixels = int(mask.sum())
    max_delta = int(delta.max()) if delta.size else 0

    if diff_pixels == 0:
        bbox = None
        diff_pct = 0.0
    else:
        ys, xs = np.nonzero(mask)
        bbox = (int(xs.min()), int(ys.min()), int(xs.max()), int(ys.max()))
        diff_pct = (diff_pixels / float(total_pixels)) * 100.0

    diff_image = None
    if with_diff_image and diff_pixels > 0:
        # Differing pixels red over a black background.
        rgba = np.zeros((height, width, 4), dtype=np.uint8)
        rgba[:, :, 3] = 255
        rgba[mask] = (255, 0, 0, 255)
        diff_image = Image.fromarray(rgba)

    return ComparisonResult(
        match=diff_pixels <= policy.max_diff_pixels,
        total_pixels=total_pixels,
        diff_pixels=diff_pixels,
        diff_pct=diff_pct,
        bbox=bbox,
        max_channel_delta=max_delta,
        diff_image=diff_image,
    )


class SnapshotStore:
    """Golden snapshots live in ``<golden_dir>/<scenario>/<golden_name>``."""

    def __init__(self, golden_dir: Path, artifacts: ArtifactManager, verbose: bool = False):
        self.golden_dir = Path(golden_dir)
        self.artifacts = artifacts
        self.verbose = verbose

    def golden_path(self, scenario_name: str, golden_name: str) -> Path:
        plain_component(scenario_name, "scenario name")
        plain_component(golden_name, "golden name")
        return self.golden_dir / scenario_name / golden_name

    def capture(self, session, scenario_name: str, label: Optional[str] = None,
                golden_name: Optional[str] = None, window_id: Optional[str] = None) -> Snapshot:
        """Take a bitmap of the session's display right now."""
        session.require_ready()
        label = label or scenario_name
        image = session.grab_screen(window_id)
        return Snapshot(
            scenario=scenario_name,
            label=label,
            golden_name=golden_name or f"{label}.png",
            image=image,
        )

    def load_golden(self, scenario_name: str, golden_name: str) -> Optional[Snapshot]:
        path = self.golden_path(scenario_name, golden_name)
        if not path.is_file():
            return None
        with Image.open(path) as img:
            image = img.convert("RGBA")
        return Snapshot(
            scenario=scenario_name,
            label=Path(golden_name).stem,
            golden_name=golden_name,
            image=image,
            kind="golden",
            captured_at=datetime.fromtimestamp(path.stat().st_mtime, tz=timezone.utc),
        )

    def compare(self, candidate: Snapshot, golden: Optional[Snapshot],
                policy: ComparePolicy = EXACT) -> ComparisonResult:
        if golden is None:
            total = candidate.width * candidate.height
            return ComparisonResult(
                match=False,
                total_pixels=total,
                diff_pixels=total,
                diff_pct=100.0,
                bbox=None,
                reason=(
                    "No golden snapshot "
                    f"{self.golden_path(candidate.scenario, candidate.golden_name)}"
                ),
            )
        return compare_images(candidate.image, golden.image, policy)

    def persist_on_failure(self, candidate: Snapshot, destination: Path,
                           comparison: Optional[ComparisonResult] = None,
                           policy: Optional[ComparePolicy] = None) -> List[Path]:
        """Write the candidate (plus diff image and JSON report) under ``destination``."""
        destination = Path(destination)
        destination.mkdir(parents=True, exist_ok=True)
        written = []

        candidate_path = destination / f"{candidate.stem}{CANDIDATE_SUFFIX}"
        candidate.image.save(candidate_path)
        written.append(candidate_path)

        if comparison is not None:
            if comparison.diff_image is not None:
                diff_path = destination / f"{candidate.stem}{DIFF_SUFFIX}"
                comparison.diff_image.save(diff_path)
                written.append(diff_path)
            payload = {
                "scenario": candidate.scenario,
                "label": candidate.label,
                "golden": str(self.golden_path(candidate.scenario, candidate.golden_name)),
                "captured_at": candidate.captured_at.isoformat(),
                "size": [candidate.width, candidate.height],
                "policy": (policy or EXACT).to_dict(),
                "comparison": comparison.to_dict(),
            }
            written.append(self.artifacts.write_json(destination / f"{candidate.stem}.json", payload))

        if self.verbose:
            print(f"[Snapshot] persisted {candidate_path}")
        return written

    def accept(self, candidate: Snapshot) -> Path:
        """Make ``candidate`` the golden for its scenario/name."""
        path = self.golden_path(candidate.scenario, candidate.golden_name)
        path.parent.mkdir(parents=True, exist_ok=True)
        candidate.image.save(path)
        return path

    def accept_candidates(self, scenario_name: str) -> List[Path]:
        """Promote the candidates persisted by the last failing run to goldens."""
        accepted = []
        for candidate_path in self.artifacts.candidates(scenario_name):
            golden_name = candidate_path.name[: -len(CANDIDATE_SUFFIX)] + ".png"
            with Image.open(candidate_path) as img:
                image = img.convert("RGBA")
            snapshot = Snapshot(scenario_name, Path(golden_name).stem, golden_name, image)
            accepted.append(self.accept(snapshot))
            candidate_path.unlink()
        return accepted
