"""Local demo agent for CLI spawn adapter integration tests."""

from __future__ import annotations

import argparse
import os
import sys
import time
from pathlib import Path

from taskman.orchestrator.progress import ProgressSnapshot, write_snapshot
from taskman.storage.common import utc_now


def main(argv: list[str] | None = None) -> int:
    """Echo the prompt into an output file, reporting progress on the way."""

    parser = argparse.ArgumentParser()
    parser.add_argument("--prompt-file", required=True)
    parser.add_argument("--output", default="output/echo.md")
    parser.add_argument("--delay-seconds", type=float, default=0.0)
    parser.add_argument("--exit-code", type=int, default=0)
    args = parser.parse_args(argv)

    prompt = Path(args.prompt_file).read_text("utf-8")
    progress_file = os.getenv("TASKMAN_PROGRESS_FILE")
    if progress_file:
        write_snapshot(
            Path(progress_file),
            ProgressSnapshot(percentage=50, message="Echoing prompt", timestamp=utc_now()),
        )
    if args.delay_seconds > 0:
        time.sleep(args.delay_seconds)

    output_path = Path(args.output)
    output_path.parent.mkdir(parents=True, exist_ok=True)
    output_path.write_text(prompt.strip() + "\n", "utf-8")
    print(prompt.strip())
    return args.exit_code


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
