import orjson

from rxvoice.metrics import clear_file, read_turn_metrics, summarize_file, summarize_turns


def write_turn(fp, turn, rt, llm, tts, interrupted=False):
    fp.write(
        orjson.dumps(
            {
                "evt": "turn_metrics",
                "session_id": "test",
                "turn": turn,
                "rt_ms": rt,
                "llm_ms": llm,
                "tts_ms": tts,
                "interrupted": interrupted,
            }
        ).decode("utf-8")
        + "\n"
    )


def test_metrics_p50_p95(tmp_path):
    metrics_file = tmp_path / "latency.ndjson"

    # Write synthetic distribution (skewed a bit)
    with metrics_file.open("w", encoding="utf-8") as f:
        # rt_ms: 420, 480, 510, 530, 590, 610  (p95 should be between 590..610)
        write_turn(f, 1, 420, 180, 150)
        write_turn(f, 2, 480, 190, 160)
        write_turn(f, 3, 510, 200, 170, interrupted=True)
        write_turn(f, 4, 530, 185, 155)
        write_turn(f, 5, 590, 210, 180)
        write_turn(f, 6, 610, 220, 190)
        f.write('{"evt": "audit", "action": "session_start"}\n')
        f.write("not json\n\n")

    # Low-level read + summarize
    turns = read_turn_metrics(metrics_file)
    assert len(turns) == 6

    summary = summarize_turns(turns)
    assert summary["rt_ms"]["count"] == 6
    assert 480 <= summary["rt_ms"]["p50"] <= 530
    assert 590 <= summary["rt_ms"]["p95"] <= 610
    assert summary["interrupted"] == {"count": 1, "rate": 0.167}

    # Full-file helper
    top = summarize_file(metrics_file)
    assert top["turns"] == 6
    assert top["metrics"]["llm_ms"]["p50"] >= 180
    assert top["metrics"]["tts_ms"]["p95"] >= 170


def test_missing_values_are_skipped(tmp_path):
    turns = [
        {"evt": "turn_metrics", "rt_ms": None, "llm_ms": 300, "tts_ms": None, "interrupted": True},
        {"evt": "turn_metrics", "rt_ms": 700, "llm_ms": 250, "tts_ms": 120},
    ]
    summary = summarize_turns(turns)
    assert summary["rt_ms"] == {"count": 1, "p50": 700, "p95": 700}
    assert summary["llm_ms"]["count"] == 2


def test_empty_and_cleared_files(tmp_path):
    metrics_file = tmp_path / "latency.ndjson"
    assert read_turn_metrics(metrics_file) == []
    assert summarize_file(metrics_file)["metrics"]["rt_ms"] == {"count": 0, "p50": 0, "p95": 0}

    with metrics_file.open("w", encoding="utf-8") as f:
        write_turn(f, 1, 400, 150, 120)
    clear_file(metrics_file)
    assert metrics_file.read_text(encoding="utf-8") == ""
    assert summarize_file(metrics_file)["turns"] == 0
