"""
Quick local test helper: overlays a station label onto a local image and
writes the JPEG to disk. This bypasses the providers, queues and storage.
"""

from __future__ import annotations

import argparse
from pathlib import Path

# Ensure project root is importable when running from scripts/
import sys

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from weather_image_service.compositor import CompositorOptions, compose_item_image, create_placeholder
from weather_image_service.models import ItemRenderContext


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Render a weather label onto a local image")
    parser.add_argument("--input", help="Path to the input image (omit to render a placeholder)")
    parser.add_argument("--output", required=True, help="Path to write the JPEG")
    parser.add_argument("--name", default="Meetstation De Bilt", help="Station name")
    parser.add_argument("--region", default=None, help="Station region")
    parser.add_argument("--temperature", type=float, default=None, help="Temperature in °C")
    return parser.parse_args()


def main() -> None:
    args = parse_args()
    output_path = Path(args.output)
    options = CompositorOptions()

    if args.input:
        input_path = Path(args.input)
        if not input_path.exists():
            raise FileNotFoundError(f"Input file not found: {input_path}")
        image_bytes = input_path.read_bytes()
    else:
        image_bytes = create_placeholder(options)

    context = ItemRenderContext(
        item_id="local", name=args.name, measurement=args.temperature, region=args.region
    )
    jpeg_bytes = compose_item_image(image_bytes, context, options)
    output_path.parent.mkdir(parents=True, exist_ok=True)
    output_path.write_bytes(jpeg_bytes)
    print(f"Wrote labelled image to {output_path}")


if __name__ == "__main__":
    main()
