"""Per-turn latency records and their p50/p95 summaries."""

from __future__ import annotations

from pathlib import Path
from typing import Dict, Iterable, List

import numpy as np
import orjson

from .settings import settings

TURN_EVENT = "turn_metrics"
TURN_KEYS = ("rt_ms", "llm_ms", "tts_ms")


def _is_number(v) -> bool:
    return isinstance(v, (int, float)) and not isinstance(v, bool)


def latency_stats(values: Iterable[float]) -> Dict[str, int]:
    vals = np.asarray([v for v in values if _is_number(v)], dtype=np.float64)
    if vals.size == 0:
        return {"count": 0, "p50": 0, "p95": 0}
    p50, p95 = np.percentile(vals, [50, 95])
    return {"count": int(vals.size), "p50": int(round(p50)), "p95": int(round(p95))}


def read_turn_metrics(path: str | Path) -> List[Dict]:
    """Turn records from an NDJSON file. Unparseable lines and other record kinds are skipped."""
    p = Path(path)
    if not p.exists():
        return []
    turns: List[Dict] = []
    for raw in p.read_bytes().splitlines():
        if not raw.strip():
            continue
        try:
            obj = orjson.loads(raw)
        except orjson.JSONDecodeError:
            continue
        if isinstance(obj, dict) and obj.get("evt") == TURN_EVENT:
            turns.append(obj)
    return turns


def summarize_turns(turns: List[Dict]) -> Dict[str, Dict]:
    out: Dict[str, Dict] = {k: latency_stats(t.get(k) for t in turns) for k in TURN_KEYS}
    interrupted = sum(1 for t in turns if t.get("interrupted"))
    out["interrupted"] = {"count": interrupted, "rate": round(interrupted / len(turns), 3) if turns else 0.0}
    return out


def summarize_file(path: str | Path | None = None) -> Dict:
    turns = read_turn_metrics(path or settings.metrics_file)
    return {"turns": len(turns), "metrics": summarize_turns(turns)}


def clear_file(path: str | Path | None = None) -> None:
    p = Path(path or settings.metrics_file)
    if p.exists():
        p.write_bytes(b"")
