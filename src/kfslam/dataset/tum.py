from __future__ import annotations

import bisect
import os
from dataclasses import dataclass
from typing import Iterator, List, Tuple

import cv2
import numpy as np


@dataclass
class TumEntry:
    ts: float
    path: str


def _read_list_txt(list_txt_path: str) -> List[TumEntry]:
    entries: List[TumEntry] = []
    base = os.path.dirname(list_txt_path)

    with open(list_txt_path, "r", encoding="utf-8") as f:
        for line in f:
            line = line.strip()
            if (not line) or line.startswith("#"):
                continue
            parts = line.split()
            if len(parts) < 2:
                continue
            ts = float(parts[0])
            rel = parts[1]
            entries.append(TumEntry(ts=ts, path=os.path.join(base, rel)))
    return entries


def associate(
    rgb: List[TumEntry], depth: List[TumEntry], max_dt: float = 0.02
) -> List[Tuple[TumEntry, TumEntry]]:
    """Pair each rgb entry with the nearest depth entry within ``max_dt`` seconds.

    Each depth entry is used at most once; pairs come back in rgb order.
    """
    if not depth:
        return []
    depth = sorted(depth, key=lambda e: e.ts)
    d_ts = [e.ts for e in depth]
    used = set()
    pairs = []
    for e in rgb:
        k = bisect.bisect_left(d_ts, e.ts)
        best = None
        for j in (k - 1, k):
            if 0 <= j < len(depth) and j not in used:
                dt = abs(d_ts[j] - e.ts)
                if dt <= max_dt and (best is None or dt < best[0]):
                    best = (dt, j)
        if best is not None:
            used.add(best[1])
            pairs.append((e, depth[best[1]]))
    return pairs


class TumRgbSequence:
    def __init__(self, seq_dir: str):
        self.seq_dir = seq_dir
        rgb_txt = os.path.join(seq_dir, "rgb.txt")
        if not os.path.isfile(rgb_txt):
            raise FileNotFoundError(f"Missing rgb.txt: {rgb_txt}")
        self.entries = _read_list_txt(rgb_txt)

        depth_txt = os.path.join(seq_dir, "depth.txt")
        self.depth_entries = _read_list_txt(depth_txt) if os.path.isfile(depth_txt) else []

    def __len__(self) -> int:
        return len(self.entries)

    @property
    def has_depth(self) -> bool:
        return len(self.depth_entries) > 0

    @staticmethod
    def _window(n: int, start: int, step: int, max_frames: int | None) -> range:
        end = n if max_frames is None else min(n, start + max_frames * step)
        return range(start, end, step)

    def iter_gray(
        self,
        *,
        start: int = 0,
        step: int = 1,
        max_frames: int | None = None,
    ) -> Iterator[Tuple[int, float, np.ndarray]]:
        idx = 0
        for i in self._window(len(self.entries), start, step, max_frames):
            e = self.entries[i]
            img = cv2.imread(e.path, cv2.IMREAD_GRAYSCALE)
            if img is None:
                raise FileNotFoundError(f"Failed to read image: {e.path}")
            yield idx, e.ts, img
            idx += 1

    def iter_rgbd(
        self,
        *,
        start: int = 0,
        step: int = 1,
        max_frames: int | None = None,
        max_dt: float = 0.02,
    ) -> Iterator[Tuple[int, float, np.ndarray, np.ndarray]]:
        """Yield (idx, ts, gray, raw_depth); depth keeps its file units (uint16 for TUM)."""
        if not self.has_depth:
            raise FileNotFoundError(f"Missing depth.txt in {self.seq_dir}")
        pairs = associate(self.entries, self.depth_entries, max_dt)
        idx = 0
        for i in self._window(len(pairs), start, step, max_frames):
            e_rgb, e_depth = pairs[i]
            img = cv2.imread(e_rgb.path, cv2.IMREAD_GRAYSCALE)
            if img is None:
                raise FileNotFoundError(f"Failed to read image: {e_rgb.path}")
            depth = cv2.imread(e_depth.path, cv2.IMREAD_UNCHANGED)
            if depth is None:
                raise FileNotFoundError(f"Failed to read depth: {e_depth.path}")
            yield idx, e_rgb.ts, img, depth
            idx += 1
