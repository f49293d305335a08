"""
Fetch the public U2Net ONNX weights into the configured model paths.

Uses the releases published by the rembg project; both files are plain
ONNX graphs with a single (1, 3, 320, 320) input.
"""

from __future__ import annotations

import argparse
from pathlib import Path
import sys

import requests

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from u2net_service.config import RemovalMode, get_settings

MODEL_URLS = {
    RemovalMode.GENERAL: "https://github.com/danielgatis/rembg/releases/download/v0.0.0/u2net.onnx",
    RemovalMode.PORTRAIT: "https://github.com/danielgatis/rembg/releases/download/v0.0.0/u2net_human_seg.onnx",
}


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Download U2Net ONNX models")
    parser.add_argument("--dest", default=None, help="Directory to write into (defaults to configured paths)")
    parser.add_argument("--only", choices=[m.value for m in RemovalMode], default=None)
    parser.add_argument("--force", action="store_true", help="Re-download existing files")
    return parser.parse_args()


def download(url: str, target: Path) -> None:
    target.parent.mkdir(parents=True, exist_ok=True)
    partial = target.with_suffix(target.suffix + ".part")
    with requests.get(url, stream=True, timeout=(5, 120)) as resp:
        resp.raise_for_status()
        with partial.open("wb") as fh:
            for chunk in resp.iter_content(chunk_size=1024 * 1024):
                fh.write(chunk)
    partial.replace(target)


def main() -> None:
    args = parse_args()
    settings = get_settings()
    modes = [RemovalMode(args.only)] if args.only else list(RemovalMode)
    for mode in modes:
        target = settings.model_path_for(mode)
        if args.dest:
            target = Path(args.dest) / target.name
        if target.exists() and not args.force:
            print(f"{mode.value}: already present at {target}")
            continue
        print(f"{mode.value}: downloading {MODEL_URLS[mode]} -> {target}")
        download(MODEL_URLS[mode], target)


if __name__ == "__main__":
    main()
