from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path

import numpy as np
import yaml

from kfslam.config import SensorType, load_config
from kfslam.dataset.tum import TumRgbSequence
from kfslam.geom.se3 import R_to_quat_xyzw, inv_T
from kfslam.system.runner import System


def _write_traj_tum(poses: list[tuple[float, np.ndarray]], out_path: str) -> int:
    """Write (ts, T_wc) pairs in TUM format. Returns the number of lines written."""
    n = 0
    with open(out_path, "w", encoding="utf-8") as f:
        for ts, T in poses:
            t = T[:3, 3]
            q = R_to_quat_xyzw(T[:3, :3])  # x y z w
            f.write(f"{ts:.6f} {t[0]:.6f} {t[1]:.6f} {t[2]:.6f} {q[0]:.6f} {q[1]:.6f} {q[2]:.6f} {q[3]:.6f}\n")
            n += 1
    return n


def main(argv: list[str] | None = None) -> int:
    ap = argparse.ArgumentParser()
    ap.add_argument("--config", type=str, default="configs/default.yaml")
    ap.add_argument("--tum_dir", type=str, required=True, help="Path to TUM sequence dir, e.g. .../freiburg1_xyz")
    ap.add_argument("--out_dir", type=str, default="outputs")
    ap.add_argument("--sensor", type=str, choices=[s.value for s in SensorType if s != SensorType.MONOCULAR_IMU],
                    default=None, help="Override the sensor from the config")
    ap.add_argument("--start", type=int, default=0)
    ap.add_argument("--step", type=int, default=1)
    ap.add_argument("--max_frames", type=int, default=None)
    ap.add_argument("--log_every", type=int, default=50, help="Log progress every N frames")
    ap.add_argument("--log_level", type=str, default="INFO")
    args = ap.parse_args(argv)

    logging.basicConfig(level=getattr(logging, args.log_level.upper(), logging.INFO),
                        format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    print(f"[INFO] Loading config: {args.config}")
    res = load_config(args.config)
    if not res.ok:
        print(f"[ERROR] {res.error.value}: {res.message}", file=sys.stderr)
        return 1
    cfg = res.config
    if args.sensor is not None:
        cfg.sensor = SensorType(args.sensor)
    if cfg.sensor == SensorType.MONOCULAR_IMU:
        # TUM sequences carry no inertial samples
        print(f"[ERROR] sensor {cfg.sensor.value} is not supported on TUM sequences", file=sys.stderr)
        return 1

    print(f"[INFO] Loading TUM sequence: {args.tum_dir}")
    seq = TumRgbSequence(args.tum_dir)
    print(f"[INFO] Sequence frames: {len(seq)}")

    out_dir = Path(args.out_dir) / Path(args.tum_dir).name
    out_dir.mkdir(parents=True, exist_ok=True)
    print(f"[INFO] Output dir: {out_dir}")

    system = System(cfg)
    frame_count = 0
    print(f"[INFO] Starting loop: sensor={cfg.sensor.value} start={args.start} step={args.step} "
          f"max_frames={args.max_frames}")
    try:
        if cfg.sensor == SensorType.RGBD:
            for idx, ts, img_gray, depth in seq.iter_rgbd(start=args.start, step=args.step, max_frames=args.max_frames):
                system.track_rgbd(img_gray, depth, ts)
                frame_count += 1
                if args.log_every > 0 and (frame_count % args.log_every == 0):
                    print(f"[INFO] Frame {frame_count} state={system.tracker.state.value} "
                          f"kfs={system.map.keyframes_in_map()}")
        else:
            for idx, ts, img_gray in seq.iter_gray(start=args.start, step=args.step, max_frames=args.max_frames):
                system.track_monocular(img_gray, ts)
                frame_count += 1
                if args.log_every > 0 and (frame_count % args.log_every == 0):
                    print(f"[INFO] Frame {frame_count} state={system.tracker.state.value} "
                          f"kfs={system.map.keyframes_in_map()}")
    finally:
        system.shutdown()

    # Save outputs
    traj_path = str(out_dir / "traj.txt")
    kf_path = str(out_dir / "keyframes.txt")
    metrics_path = str(out_dir / "metrics.json")
    cfg_path = str(out_dir / "config_used.yaml")

    n_traj = _write_traj_tum([(p.ts, inv_T(p.T_cw)) for p in system.trajectory if p.valid], traj_path)
    n_kf = _write_traj_tum(system.keyframe_trajectory(), kf_path)

    with open(metrics_path, "w", encoding="utf-8") as f:
        json.dump({"summary": system.telemetry.summary(), "frames": system.telemetry.frames}, f, indent=2)

    with open(cfg_path, "w", encoding="utf-8") as f:
        yaml.safe_dump(cfg.to_dict(), f, sort_keys=False)

    print(f"[OK] wrote: {traj_path} ({n_traj} poses)")
    print(f"[OK] wrote: {kf_path} ({n_kf} keyframes)")
    print(f"[OK] wrote: {metrics_path}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
