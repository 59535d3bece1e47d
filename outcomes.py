"""Outcome log for cartoonize runs.

Which stage of the degrade chain produced each image is invisible to the
person downloading it, so every run is recorded here.

Outputs:
  logs/outcomes.log          — human-readable append-only log
  logs/outcomes_totals.json  — machine-readable running totals
"""

from __future__ import annotations

import json
import logging
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional

log = logging.getLogger(__name__)

LOGS_DIR = Path(__file__).parent / "logs"
OUTCOME_LOG = LOGS_DIR / "outcomes.log"
TOTALS_FILE = LOGS_DIR / "outcomes_totals.json"

FAILED = "failed"

# outcomes.log and the totals file are rewritten in place; one writer at a time
_log_lock = threading.Lock()


# ── Totals persistence ────────────────────────────────────────────────────────

def _empty_totals() -> Dict:
    return {
        "run_count":      0,
        "outcomes":       {},   # outcome kind -> runs
        "styles":         {},   # style -> runs
        "stage_failures": {},   # stage -> failures
    }


def _load_totals() -> Dict:
    totals = _empty_totals()
    if TOTALS_FILE.exists():
        try:
            stored = json.loads(TOTALS_FILE.read_text(encoding="utf-8"))
        except (OSError, ValueError):
            log.warning("Unreadable totals file %s, starting fresh", TOTALS_FILE)
        else:
            if isinstance(stored, dict):
                totals.update(stored)
    return totals


def _save_totals(totals: Dict) -> None:
    LOGS_DIR.mkdir(parents=True, exist_ok=True)
    TOTALS_FILE.write_text(json.dumps(totals, indent=2), encoding="utf-8")


def get_totals() -> Dict:
    """Return current running totals."""
    with _log_lock:
        return _load_totals()


def _bump(counter: Dict[str, int], key: str) -> None:
    counter[key] = counter.get(key, 0) + 1


# ── Log writer ────────────────────────────────────────────────────────────────

_W = 81   # total log width
_DIV  = "─" * _W
_HDIV = "═" * _W
_FOOTER_TITLE = "  RUNNING TOTALS  (all time)"


def append_outcome_log(
    run_id: str,
    style: Optional[str],
    outcome: Optional[str],
    failures: List[Dict],
    duration: float,
    recipe: Optional[str] = None,
) -> None:
    """Append a formatted run record to outcomes.log and update running totals.

    ``outcome`` is None when the whole pipeline failed.
    """
    LOGS_DIR.mkdir(parents=True, exist_ok=True)
    now = datetime.now(timezone.utc).strftime("%Y-%m-%d %H:%M:%S UTC")
    kind = outcome or FAILED
    style_label = style or "default"

    lines: List[str] = []

    def L(s: str = "") -> None:
        lines.append(s)

    L(_HDIV)
    L(f"  Run {run_id:<10}  style={style_label:<10}  {now}   {duration:.1f}s")
    L(_DIV)
    if failures:
        L(f"  {'[Failed stages]':<18} {'Stage':<12} {'Cause'}")
        L(f"  {'':18} {_DIV[:60]}")
        for item in failures:
            cause = str(item.get("error", ""))[:48]
            L(f"  {'':18} {item.get('stage', ''):<12} {cause}")
        L(_DIV)
    L(f"  {'Outcome:':<20} {kind}")
    if recipe:
        L(f"  {'Local recipe:':<20} {recipe}")
    L()

    block = "\n".join(lines) + "\n"

    with _log_lock:
        # Strip the old totals footer so it can be re-appended after the new block
        if OUTCOME_LOG.exists():
            content = OUTCOME_LOG.read_text(encoding="utf-8")
            marker_pos = content.rfind(_FOOTER_TITLE)
            if marker_pos != -1:
                hdr_pos = content.rfind(_HDIV, 0, marker_pos)
                if hdr_pos != -1:
                    content = content[:hdr_pos]
                OUTCOME_LOG.write_text(content, encoding="utf-8")

        with open(OUTCOME_LOG, "a", encoding="utf-8") as fh:
            fh.write(block)

        totals = _load_totals()
        totals["run_count"] += 1
        _bump(totals["outcomes"], kind)
        _bump(totals["styles"], style_label)
        for item in failures:
            _bump(totals["stage_failures"], item.get("stage", "unknown"))
        _save_totals(totals)
        _write_totals_footer(totals)

    log.info("Outcome logged: run=%s  style=%s  outcome=%s", run_id, style_label, kind)


def _write_totals_footer(totals: Dict) -> None:
    """Append the running totals block to the end of outcomes.log."""
    footer_lines = [
        _HDIV,
        _FOOTER_TITLE,
        _DIV,
        f"  {'Total Runs:':<40}  {totals['run_count']:>6}",
    ]
    for kind, count in sorted(totals["outcomes"].items()):
        footer_lines.append(f"  {kind + ':':<40}  {count:>6}")
    for stage, count in sorted(totals["stage_failures"].items()):
        footer_lines.append(f"  {'Failed at ' + stage + ':':<40}  {count:>6}")
    footer_lines.append(_HDIV)
    footer_lines.append("")

    LOGS_DIR.mkdir(parents=True, exist_ok=True)
    with open(OUTCOME_LOG, "a", encoding="utf-8") as fh:
        fh.write("\n".join(footer_lines))
