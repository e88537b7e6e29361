#!/usr/bin/env python3
"""Record pixel-data hashes of the figures under out/figures/.

Run after `variant-severity simulate && variant-severity all` with a fixed seed. Only the
pixel data is hashed (PNG metadata such as timestamps is ignored), so a later run can be
checked for visual equivalence by tests/test_figure_hashes.py.
"""

import argparse
import hashlib
import json
from pathlib import Path

from PIL import Image


def pixel_hash(image_path: Path) -> str:
    """Compute SHA256 hash of image pixel data only."""
    with Image.open(image_path) as img:
        img = img.convert("RGBA")
        return hashlib.sha256(img.tobytes()).hexdigest()


def main():
    root = Path(__file__).parent.parent
    p = argparse.ArgumentParser(description=__doc__.splitlines()[0])
    p.add_argument("--figures", type=Path, default=root / "out" / "figures")
    p.add_argument("--output", type=Path, default=root / "tests" / "reference_hashes.json")
    args = p.parse_args()

    pngs = sorted(args.figures.glob("*.png"))
    if not pngs:
        raise SystemExit(f"No figures under {args.figures}. Run `variant-severity all` first.")

    hashes = {}
    for png in pngs:
        h = pixel_hash(png)
        hashes[png.name] = h
        print(f"{png.name}: {h[:16]}...")

    with open(args.output, "w") as f:
        json.dump(hashes, f, indent=2, sort_keys=True)
        f.write("\n")

    print(f"\nWrote {len(hashes)} hashes to {args.output}")


if __name__ == "__main__":
    main()
