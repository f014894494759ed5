from collections import Counter


class Telemetry:
    """One JSON-serializable record per tracking cycle."""

    def __init__(self):
        self.frames = []

    def log_frame(self, idx: int, rec: dict):
        rec["frame_idx"] = idx
        self.frames.append(rec)

    def clear(self):
        self.frames = []

    def summary(self) -> dict:
        states = Counter(r.get("state") for r in self.frames)
        strategies = Counter(r["strategy"] for r in self.frames if r.get("strategy"))
        return {
            "num_frames": len(self.frames),
            "states": dict(states),
            "strategies": dict(strategies),
            "num_keyframes_inserted": sum(1 for r in self.frames if r.get("keyframe", {}).get("insert")),
            "num_resets": sum(1 for r in self.frames if r.get("reset")),
        }
