import pytest

from rxvoice.sentences import SentenceBoundaryDetector, chunk_for_tts, clean_for_tts, estimate_speaking_ms


def test_abbreviation_is_not_a_boundary():
    det = SentenceBoundaryDetector(min_length=10)
    units = det.add_text("Dr. Smith saw the patient. The visit was routine. ")
    assert [u.text for u in units] == ["Dr. Smith saw the patient.", "The visit was routine."]
    assert all(u.is_complete for u in units)
    assert det.buffer == ""


def test_streamed_deltas_and_flush():
    det = SentenceBoundaryDetector(min_length=10)
    out = []
    for delta in ["Dr", ". Smi", "th saw the pat", "ient. The visit", " was routine."]:
        out.extend(det.add_text(delta))
    assert [u.text for u in out] == ["Dr. Smith saw the patient."]

    tail = det.flush()
    assert tail is not None
    assert tail.text == "The visit was routine."
    assert tail.is_complete is False
    assert tail.confidence < out[0].confidence
    assert det.flush() is None


def test_short_and_wordless_candidates_wait():
    det = SentenceBoundaryDetector(min_length=10)
    assert det.add_text("Yes. ") == []
    assert det.add_text("... ") == []
    units = det.add_text("I can help with that. ")
    assert [u.text for u in units] == ["Yes. ... I can help with that."]


def test_confidence_and_kind_are_bounded_labels():
    det = SentenceBoundaryDetector()
    (unit,) = det.add_text("Would you like me to place that refill for you today? ")
    assert unit.kind == "sentence"
    assert 0.0 < unit.confidence <= 1.0


def test_clear_discards_buffer():
    det = SentenceBoundaryDetector()
    det.add_text("half a thought")
    det.clear()
    assert det.flush() is None


def test_clean_for_tts_strips_formatting():
    text = "Take **one** tablet\n with `water`.See https://example.com/x for more ."
    assert clean_for_tts(text) == "Take one tablet with water. See [link] for more."


def test_chunk_for_tts_respects_max_length():
    text = "This is the first sentence. This is the second sentence. This is the third one."
    chunks = chunk_for_tts(text, max_chunk_length=60)
    assert chunks == [
        "This is the first sentence. This is the second sentence.",
        "This is the third one.",
    ]


def test_estimate_speaking_ms_scales_with_words_and_rate():
    text = "Your refill is ready today."
    assert estimate_speaking_ms(text) == pytest.approx(2000.0)
    assert estimate_speaking_ms(text, wpm=300) == pytest.approx(1000.0)
    assert estimate_speaking_ms("   ") == 0.0
