from dataclasses import dataclass

from ..config import SensorType


@dataclass
class KeyFrameDecision:
    insert: bool
    reason: str = ""


class KeyFramePolicy:
    """Decides whether the current frame becomes a keyframe.

    Mirrors the tracking-quality heuristics: enough frames since the last
    keyframe (or an idle mapper), and the frame tracks noticeably fewer
    points than its reference keyframe.
    """

    def __init__(self, sensor: SensorType, max_frames: int, min_frames: int = 0, use_pattern: bool = False):
        self.sensor = sensor
        self.max_frames = int(max_frames)
        self.min_frames = int(min_frames)
        self.use_pattern = bool(use_pattern)

    def decide(
        self,
        frame,
        reference_kf,
        mapper,
        *,
        n_keyframes: int,
        matches_inliers: int,
        last_kf_frame_id: int,
        last_reloc_frame_id: int,
        only_tracking: bool = False,
    ) -> KeyFrameDecision:
        if only_tracking:
            return KeyFrameDecision(False, "REJECT_KF_ONLY_TRACKING")

        # a loop closure froze the mapper
        if mapper.is_stopped() or mapper.stop_requested():
            return KeyFrameDecision(False, "REJECT_KF_MAPPER_STOPPED")

        if frame.id < last_reloc_frame_id + self.max_frames and n_keyframes > self.max_frames:
            return KeyFrameDecision(False, "REJECT_KF_RECENT_RELOC")

        min_obs = 3
        if n_keyframes <= 2:
            min_obs = 2
        if n_keyframes == 1 and self.use_pattern:
            min_obs = 1
        ref_matches = reference_kf.tracked_map_points(min_obs) if reference_kf is not None else 0

        idle = mapper.accept_keyframes()

        rgbd = self.sensor == SensorType.RGBD
        tracked_close = non_tracked_close = 0
        if rgbd:
            for i in range(frame.N):
                z = frame.depth[i]
                if 0.0 < z < frame.th_depth:
                    if frame.map_points[i] >= 0 and not frame.outliers[i]:
                        tracked_close += 1
                    else:
                        non_tracked_close += 1
        need_close = tracked_close < 100 and non_tracked_close > 70

        th_ref_ratio = 0.75
        if n_keyframes < 2:
            th_ref_ratio = 0.4
        if not rgbd:
            th_ref_ratio = 0.9

        c1a = frame.id >= last_kf_frame_id + self.max_frames
        c1b = frame.id >= last_kf_frame_id + self.min_frames and idle
        c1c = rgbd and (matches_inliers < ref_matches * 0.25 or need_close)
        c2 = (matches_inliers < ref_matches * th_ref_ratio or need_close) and matches_inliers > 15

        if not (c1a or c1b or c1c):
            return KeyFrameDecision(False, "REJECT_KF_TOO_SOON")
        if not c2:
            return KeyFrameDecision(False, f"REJECT_KF_ENOUGH_TRACKED:{matches_inliers}/{ref_matches}")

        if idle:
            return KeyFrameDecision(True, "ACCEPT_KF_MAPPER_IDLE")

        mapper.interrupt_ba()
        if rgbd and mapper.keyframes_in_queue() < 3:
            return KeyFrameDecision(True, "ACCEPT_KF_SHORT_QUEUE")
        return KeyFrameDecision(False, "REJECT_KF_MAPPER_BUSY")
