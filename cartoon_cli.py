#!/usr/bin/env python3
"""CLI wrapper for the cartoonize pipeline.

Usage:
    python cartoon_cli.py --image me.jpg --style cartoon1
    python cartoon_cli.py --image me.jpg --style cartoon3 --no-watermark --json
"""

from __future__ import annotations

import argparse
import json
import os
import sys
import time
from pathlib import Path
from typing import List, Optional

from dotenv import load_dotenv

load_dotenv()

import log_setup
log_setup.configure(os.environ.get("LOG_LEVEL", "INFO"))

import cartoon_core
import outcomes
import watermark


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(
        description="Turn a portrait into a 720x1280 cartoon",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python cartoon_cli.py --image me.jpg --style cartoon1
  python cartoon_cli.py --image me.png --style cartoon2 --output-dir out
  python cartoon_cli.py --image me.jpg --style cartoon3 --model gemini-2.5-flash-image
""",
    )
    parser.add_argument("--image", default=None, help="Path to the source portrait")
    parser.add_argument("--style", default="cartoon1", help="Style id (see --list-styles)")
    parser.add_argument(
        "--model",
        default=os.environ.get("GEMINI_MODEL", cartoon_core.DEFAULT_MODEL),
        help=f"Gemini image model (default: {cartoon_core.DEFAULT_MODEL})",
    )
    parser.add_argument(
        "--timeout",
        type=float,
        default=float(os.environ.get("GEMINI_TIMEOUT", cartoon_core.DEFAULT_TIMEOUT)),
        help="Gemini call timeout in seconds (default: 60)",
    )
    parser.add_argument(
        "--output-dir",
        default="cli_output",
        help="Directory to save the result (default: cli_output)",
    )
    parser.add_argument("--no-watermark", action="store_true", help="Skip the watermark overlay")
    parser.add_argument("--json", action="store_true", help="Print the run summary as JSON")
    parser.add_argument("--list-styles", action="store_true", help="List styles and exit")

    args = parser.parse_args(argv)

    if args.list_styles:
        _list_styles()
        return 0

    if not args.image:
        parser.error("--image is required")

    source = Path(args.image)
    if not source.is_file():
        print(f"✗  Image not found: {source}", file=sys.stderr)
        return 2

    if not os.environ.get("GOOGLE_API_KEY"):
        _echo("  ⚠ GOOGLE_API_KEY not set — local fallback only")

    client = cartoon_core.GeminiClient(
        api_key=os.environ.get("GOOGLE_API_KEY", ""),
        model=args.model,
        timeout=args.timeout,
    )

    output_dir = Path(args.output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)
    run_id = f"cli-{int(time.time())}"
    output_path = output_dir / f"{source.stem}_{args.style}_{int(time.time())}.png"

    _echo(f"\n  ✦ Cartoonizer CLI")
    _echo(f"  Image   : {source}")
    _echo(f"  Style   : {args.style}")
    _echo(f"  Model   : {args.model}")
    _echo(f"  Output  : {output_path}\n")

    def progress_cb(event: dict) -> None:
        status = event.get("status", "")
        msg    = event.get("message", "")
        prefix = {
            "started":   "  ◌ ",
            "completed": "  ✓ ",
            "failed":    "  ✗ ",
        }.get(status, "    ")
        _echo(f"{prefix}{msg}")

    pipeline = cartoon_core.CartoonPipeline(
        run_id=run_id,
        source_path=str(source),
        style=args.style,
        client=client,
        progress_cb=progress_cb,
    )
    try:
        result = pipeline.run()
    except cartoon_core.PipelineFailed as exc:
        _record_outcome(run_id, args.style, None, exc.failures, 0.0)
        print(f"\n✗  {exc}", file=sys.stderr)
        return 1

    _record_outcome(
        run_id, args.style, result.outcome, result.failures, result.duration, result.recipe
    )
    cartoon_core.write_bytes(str(output_path), result.image_bytes)
    if not args.no_watermark:
        watermark.apply_watermark(str(output_path), str(output_path))

    _echo(f"\n  ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━")
    _echo(f"  Outcome : {result.outcome}")
    if result.recipe:
        _echo(f"  Recipe  : {result.recipe}")
    _echo(f"  Duration: {result.duration:.1f}s")
    _echo(f"  Saved   : {output_path}\n")

    if args.json:
        print(json.dumps({
            "run_id": run_id,
            "outcome": result.outcome,
            "recipe": result.recipe,
            "failures": result.failures,
            "output": str(output_path),
        }, indent=2))

    return 0


def _record_outcome(run_id, style, outcome, failures, duration, recipe=None) -> None:
    try:
        outcomes.append_outcome_log(run_id, style, outcome, failures, duration, recipe)
    except (OSError, ValueError, KeyError) as exc:
        print(f"  ⚠ Outcome log write failed: {exc}", file=sys.stderr)


def _list_styles() -> None:
    print("\nAvailable Styles")
    print("─" * 40)
    for s in cartoon_core.STYLES:
        recipe = cartoon_core.select_recipe(s["id"])
        steps = " → ".join(op for op, _ in recipe.steps)
        print(f"  {s['id']:<10} {s['name']}")
        print(f"    {s['description']}")
        print(f"    fallback: {steps}")
    print(f"  {'(other)':<10} default prompt, fallback: modulate")
    print()


def _echo(msg: str) -> None:
    print(msg, flush=True)


if __name__ == "__main__":
    raise SystemExit(main())
