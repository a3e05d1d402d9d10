"""Local deterministic render command for demos and integration tests."""

from __future__ import annotations

import argparse
import sys
import time
from pathlib import Path

from atlas_dispatch.dispatch.frames import resolve_frames


def main(argv: list[str] | None = None) -> int:
    """Write one text file per frame into the output directory."""

    parser = argparse.ArgumentParser()
    parser.add_argument("--frames", required=True, help="Frame range, e.g. '1 2 3' or '1-3'.")
    parser.add_argument("--output-dir", required=True)
    parser.add_argument("--task-id", default="")
    parser.add_argument("--fail-frames", default="", help="Frames that make the render fail.")
    parser.add_argument("--sleep", type=float, default=0.0, help="Seconds spent per frame.")
    args = parser.parse_args(argv)

    frames = sorted(resolve_frames(args.frames))
    failing = resolve_frames(args.fail_frames)
    output_dir = Path(args.output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)

    for frame in frames:
        if frame in failing:
            print(f"frame {frame}: simulated render failure", file=sys.stderr)
            return 3
        if args.sleep > 0:
            time.sleep(args.sleep)
        (output_dir / f"frame_{frame:05d}.txt").write_text(
            f"frame={frame} task={args.task_id}\n",
            encoding="utf-8",
        )
        print(f"rendered frame {frame}", flush=True)
    return 0


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
